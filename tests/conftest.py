"""
Shared fixtures: a recording fake of the upstream provider and an app factory
wired to it through httpx's MockTransport.
"""

from typing import Callable, List

import httpx
import orjson
import pytest
from starlette.testclient import TestClient

from chatrelay.config import ModelCatalog, Settings
from chatrelay.main import create_app
from chatrelay.upstream import UpstreamClient

UPSTREAM_URL = "https://upstream.test/v1/chat/completions"


def completion_body(content: str) -> dict:
    return {
        "id": "chatcmpl-upstream",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "meta-llama/Llama-3.1-8B-Instruct:fireworks-ai",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def parse_records(text: str) -> List[str]:
    """Split a streamed body into the payloads of its ``data:`` records."""
    records = []
    for block in text.split("\n\n"):
        if block.startswith("data: "):
            records.append(block[len("data: "):])
    return records


class FakeUpstream:
    """MockTransport handler that records outbound requests and replays a reply."""

    def __init__(self) -> None:
        self.calls: List[httpx.Request] = []
        self.reply: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json=completion_body("Hello friend")
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.reply(request)

    @property
    def last_payload(self) -> dict:
        return orjson.loads(self.calls[-1].content)


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def settings():
    return Settings(
        hf_token="hf_test_token",
        upstream_url=UPSTREAM_URL,
        stream_delay_ms=0,
        upstream_timeout=None,
    )


@pytest.fixture
def make_client(settings, fake_upstream):
    clients = []

    def _make(rate_limiter=None, **overrides) -> TestClient:
        cfg = settings.model_copy(update=overrides)
        upstream = UpstreamClient(
            cfg.upstream_url,
            cfg.hf_token,
            cfg.upstream_timeout,
            transport=httpx.MockTransport(fake_upstream),
        )
        app = create_app(cfg, ModelCatalog(), upstream, rate_limiter)
        client = TestClient(app, raise_server_exceptions=False)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()
