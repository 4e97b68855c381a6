from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_MODEL_ALIASES: Dict[str, str] = {
    "llama-3.1-8b": "meta-llama/Llama-3.1-8B-Instruct:fireworks-ai",
    "llama-3.1-70b": "meta-llama/Llama-3.1-70B-Instruct:fireworks-ai",
    "mixtral-8x7b": "mistralai/Mixtral-8x7B-Instruct-v0.1:fireworks-ai",
    "qwen-2.5-72b": "Qwen/Qwen2.5-72B-Instruct:fireworks-ai",
    "hermes-3": "NousResearch/Hermes-3-Llama-3.1-8B:fireworks-ai",
}

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    hf_token: str | None = Field(default=None, description="Bearer credential for the upstream provider")
    default_model: str = Field(default="meta-llama/Llama-3.1-8B-Instruct:fireworks-ai")
    upstream_url: str = Field(default="https://router.huggingface.co/v1/chat/completions")
    models_file: str | None = Field(default=None, description="Optional YAML alias table")
    stream_delay_ms: int = Field(default=80, ge=0, description="Pause between simulated chunks")
    upstream_timeout: float | None = Field(default=300.0, description="Seconds; None disables")
    explicit_zero_params: bool = Field(default=False)
    max_body_bytes: int = Field(default=10 * 1024 * 1024)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    redis_url: str | None = Field(default=None)
    rate_limit_max: int = Field(default=100)
    rate_limit_window: int = Field(default=900)
    environment: str = Field(default="production")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    service_name: str = Field(default=os.getenv("NODE_ID", "chatrelay"))

    @property
    def debug(self) -> bool:
        return self.environment == "development"


class ModelCatalog:
    """Read-only alias table mapping short model names to upstream ids."""

    def __init__(self, aliases: Dict[str, str] | None = None) -> None:
        self._aliases: Dict[str, str] = dict(aliases if aliases is not None else DEFAULT_MODEL_ALIASES)

    @classmethod
    def from_file(cls, file_path: str) -> "ModelCatalog":
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Model alias file not found: {path}")
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        models_section = raw.get("models", {})
        parsed: Dict[str, str] = {}
        for alias, model_id in models_section.items():
            parsed[str(alias)] = str(model_id)
        return cls(parsed)

    def resolve(self, model: str) -> str:
        return self._aliases.get(model, model)

    def all_models(self) -> Dict[str, str]:
        return dict(self._aliases)

    def __contains__(self, alias: object) -> bool:
        return alias in self._aliases

    def __len__(self) -> int:
        return len(self._aliases)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_timeout(name: str, default: float) -> float | None:
    value = float(os.getenv(name, default))
    return value if value > 0 else None


def load_settings() -> Settings:
    load_dotenv()
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        hf_token=os.getenv("HF_TOKEN") or None,
        default_model=os.getenv("HF_MODEL", "meta-llama/Llama-3.1-8B-Instruct:fireworks-ai"),
        upstream_url=os.getenv("HF_API_URL", "https://router.huggingface.co/v1/chat/completions"),
        models_file=os.getenv("MODELS_FILE") or None,
        stream_delay_ms=int(os.getenv("STREAM_DELAY_MS", 80)),
        upstream_timeout=_env_timeout("UPSTREAM_TIMEOUT", 300.0),
        explicit_zero_params=_env_flag("EXPLICIT_ZERO_PARAMS"),
        max_body_bytes=int(os.getenv("MAX_BODY_BYTES", 10 * 1024 * 1024)),
        cors_origins=[item.strip() for item in origins.split(",") if item.strip()],
        redis_url=os.getenv("REDIS_URL") or None,
        rate_limit_max=int(os.getenv("RATE_LIMIT_MAX", 100)),
        rate_limit_window=int(os.getenv("RATE_LIMIT_WINDOW", 900)),
        environment=os.getenv("ENVIRONMENT", "production"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 3000)),
        service_name=os.getenv("NODE_ID", "chatrelay"),
    )


def load_catalog(settings: Settings) -> ModelCatalog:
    if settings.models_file:
        return ModelCatalog.from_file(settings.models_file)
    return ModelCatalog()
