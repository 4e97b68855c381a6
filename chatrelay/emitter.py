from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

import httpx
import orjson

from .errors import StreamFault
from .schemas import ChatCompletionChunk, ChunkChoice
from .upstream import UpstreamStream

logger = logging.getLogger("uvicorn.error")

DONE = b"data: [DONE]\n\n"
RECORD_SEPARATOR = b"\n\n"
NO_RESPONSE = "No response"

DisconnectCheck = Callable[[], Awaitable[bool]]


def sse_record(chunk: ChatCompletionChunk) -> bytes:
    return b"data: " + orjson.dumps(chunk.model_dump()) + RECORD_SEPARATOR


def extract_answer(body: Any) -> str:
    """Return the first choice's message text, or the placeholder."""
    if not isinstance(body, dict):
        raise StreamFault(f"upstream body is {type(body).__name__}, expected an object")
    choices = body.get("choices")
    first = choices[0] if isinstance(choices, list) and choices else None
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) and content:
        return content
    return NO_RESPONSE


def segment(text: str) -> List[str]:
    """Split on whitespace; every piece after the first gets one leading space."""
    return [word if index == 0 else " " + word for index, word in enumerate(text.split())]


class ChunkEmitter:
    """Turns one upstream result into ``data:`` records for a single client.

    Both modes end with ``data: [DONE]``, including when the source fails.
    The only case without a terminator is a client that already went away.
    """

    def __init__(
        self,
        model: str,
        delay_seconds: float = 0.08,
        is_disconnected: Optional[DisconnectCheck] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self.delay_seconds = delay_seconds
        self.abandoned = False
        self._is_disconnected = is_disconnected
        self._clock = clock

    def _chunk(self, chunk_id: str, delta: dict, finish_reason: str | None = None) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=chunk_id,
            created=int(self._clock()),
            model=self.model,
            choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
        )

    def _stamp(self) -> int:
        return int(self._clock() * 1000)

    def error_chunk(self, exc: BaseException) -> ChatCompletionChunk:
        return self._chunk(f"error-{self._stamp()}", {"content": f"Error: {exc}"}, "error")

    async def _client_gone(self) -> bool:
        if self._is_disconnected is None:
            return False
        if await self._is_disconnected():
            self.abandoned = True
        return self.abandoned

    async def simulate(self, body: Any) -> AsyncIterator[ChatCompletionChunk]:
        """Yield one chunk per word of the answer, then the ``stop`` chunk."""
        pieces = segment(extract_answer(body))
        last = len(pieces) - 1
        for index, piece in enumerate(pieces):
            yield self._chunk(f"simulated-{self._stamp()}-{index}", {"content": piece})
            if index < last:
                if await self._client_gone():
                    logger.info("client disconnected after %d/%d simulated chunks", index + 1, len(pieces))
                    return
                await asyncio.sleep(self.delay_seconds)
        yield self._chunk(f"simulated-{self._stamp()}-{len(pieces)}", {}, "stop")

    async def simulated_stream(self, body: Any) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.simulate(body):
                yield sse_record(chunk)
        except Exception as exc:
            logger.exception("simulated stream failed for model=%s", self.model)
            yield sse_record(self.error_chunk(exc))
        if self.abandoned:
            return
        yield DONE

    async def relay(self, upstream: UpstreamStream) -> AsyncIterator[bytes]:
        """Copy upstream bytes through untouched, closing the source at the end."""
        tail = RECORD_SEPARATOR
        try:
            async for data in upstream.response.aiter_bytes():
                if not data:
                    continue
                tail = (tail + data)[-2:]
                yield data
        except (httpx.HTTPError, httpx.StreamError) as exc:
            logger.error("upstream stream broke for model=%s: %r", self.model, exc)
            if tail != RECORD_SEPARATOR:
                yield RECORD_SEPARATOR
            yield sse_record(self.error_chunk(exc))
            yield DONE
        finally:
            await upstream.response.aclose()
