from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

import httpx
import orjson

from .errors import UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger("uvicorn.error")

STREAMING_MEDIA_TYPES = ("text/event-stream", "text/plain")


@dataclass
class UpstreamBody:
    status: int
    body: Any


@dataclass
class UpstreamStream:
    status: int
    content_type: str
    response: httpx.Response


@dataclass
class UpstreamError:
    status: int
    text: str


UpstreamResult = Union[UpstreamBody, UpstreamStream, UpstreamError]


def is_streaming_content_type(content_type: str) -> bool:
    lowered = content_type.lower()
    return any(media in lowered for media in STREAMING_MEDIA_TYPES)


class UpstreamClient:
    """Single-shot caller for the provider's chat-completions endpoint.

    Calls are never retried: a completion may be billed or count against the
    provider's rate limit even when the relay later fails.
    """

    def __init__(
        self,
        url: str,
        token: str | None,
        timeout: float | None = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    async def read_body(self, response: httpx.Response) -> bytes:
        """Read a whole reply body and release the connection."""
        try:
            return await response.aread()
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Body from {self._url} stalled: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"Body from {self._url} broke off: {exc!r}") from exc
        finally:
            await response.aclose()

    async def invoke(self, payload: Dict[str, Any]) -> UpstreamResult:
        request = self._client.build_request(
            "POST", self._url, headers=self._headers(), content=orjson.dumps(payload)
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"No answer from {self._url}: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"Could not reach {self._url}: {exc!r}") from exc

        if not response.is_success:
            await self.read_body(response)
            logger.error("upstream error status=%d body=%s", response.status_code, response.text)
            return UpstreamError(status=response.status_code, text=response.text)

        content_type = response.headers.get("content-type", "")
        if is_streaming_content_type(content_type):
            # The caller owns the open response from here on.
            return UpstreamStream(status=response.status_code, content_type=content_type, response=response)

        raw = await self.read_body(response)
        return UpstreamBody(status=response.status_code, body=orjson.loads(raw))
