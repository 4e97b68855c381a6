"""
Tests for settings loading and the model alias catalog.
"""

import pytest

from chatrelay.config import DEFAULT_MODEL_ALIASES, ModelCatalog, Settings, load_catalog, load_settings


def test_default_catalog():
    catalog = ModelCatalog()

    assert len(catalog) == 5
    assert "llama-3.1-8b" in catalog
    assert catalog.resolve("llama-3.1-70b") == "meta-llama/Llama-3.1-70B-Instruct:fireworks-ai"
    assert catalog.resolve("not-an-alias") == "not-an-alias"


def test_catalog_is_not_mutated_through_accessors():
    catalog = ModelCatalog()

    catalog.all_models()["llama-3.1-8b"] = "tampered"

    assert catalog.resolve("llama-3.1-8b") == DEFAULT_MODEL_ALIASES["llama-3.1-8b"]


def test_catalog_from_yaml(tmp_path):
    path = tmp_path / "models.yaml"
    path.write_text("models:\n  tiny: org/tiny-model:provider\n", encoding="utf-8")

    catalog = load_catalog(Settings(models_file=str(path)))

    assert catalog.all_models() == {"tiny": "org/tiny-model:provider"}
    assert catalog.resolve("llama-3.1-8b") == "llama-3.1-8b"


def test_catalog_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ModelCatalog.from_file(str(tmp_path / "missing.yaml"))


def test_load_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HF_TOKEN", "hf_env")
    monkeypatch.setenv("HF_MODEL", "org/default")
    monkeypatch.setenv("STREAM_DELAY_MS", "5")
    monkeypatch.setenv("UPSTREAM_TIMEOUT", "0")
    monkeypatch.setenv("EXPLICIT_ZERO_PARAMS", "yes")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.delenv("REDIS_URL", raising=False)

    settings = load_settings()

    assert settings.hf_token == "hf_env"
    assert settings.default_model == "org/default"
    assert settings.stream_delay_ms == 5
    assert settings.upstream_timeout is None
    assert settings.explicit_zero_params is True
    assert settings.cors_origins == ["http://a.test", "http://b.test"]
    assert settings.port == 8080
    assert settings.redis_url is None


def test_empty_token_counts_as_missing(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HF_TOKEN", "")

    assert load_settings().hf_token is None
