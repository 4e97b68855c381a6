from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

import orjson
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.routing import Route

from .config import ModelCatalog, Settings, load_catalog, load_settings
from .emitter import ChunkEmitter
from .errors import InvalidRequest, PayloadTooLarge, RateLimited, RelayError, UpstreamFailure
from .metrics import RelayMetrics, metrics_reporter
from .normalizer import normalize_request
from .rate_limiter import RateLimiter
from .upstream import UpstreamClient, UpstreamError, UpstreamStream

logger = logging.getLogger("uvicorn.error")
logger.setLevel(logging.INFO)

SIMULATED_MEDIA_TYPE = "text/plain; charset=utf-8"
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
FEATURES = [
    "Streaming support",
    "Multiple models",
    "Request logging",
    "Rate limiting",
    "Health monitoring",
]


class ORJSONResponse(Response):
    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content)


class ClosingStreamingResponse(StreamingResponse):
    """Closes the body generator once sending stops, including on client disconnect.

    ``release`` runs afterwards as well, since closing a generator that never
    started skips its ``finally`` block.
    """

    def __init__(self, content, *args, release: Callable[[], Awaitable[None]] | None = None, **kwargs) -> None:
        super().__init__(content, *args, **kwargs)
        self._release = release

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            if self._release is not None:
                await self._release()


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            logger.info(
                "%s %s status=%d duration=%.1fms client=%s",
                request.method,
                request.url.path,
                status,
                (time.perf_counter() - start) * 1000,
                _client_id(request),
            )


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _error_response(exc: RelayError, headers: Dict[str, str] | None = None) -> Response:
    headers = dict(headers or {})
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return ORJSONResponse(exc.to_body(), status_code=exc.status_code, headers=headers)


async def _read_json(request: Request, limit: int) -> Any:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge(f"Body exceeds {limit} bytes")
    body = await request.body()
    if len(body) > limit:
        raise PayloadTooLarge(f"Body exceeds {limit} bytes")
    try:
        return orjson.loads(body or b"{}")
    except orjson.JSONDecodeError as exc:
        raise InvalidRequest("Invalid JSON body") from exc


async def _enforce_rate_limit(request: Request) -> Dict[str, str]:
    limiter: RateLimiter | None = request.app.state.rate_limiter
    if limiter is None:
        return {}
    outcome = await limiter.check_and_consume(_client_id(request))
    if not outcome.allowed:
        raise RateLimited(f"Limit of {limiter.description} exceeded", retry_after=outcome.retry_after)
    return {"RateLimit-Limit": str(outcome.limit), "RateLimit-Remaining": str(outcome.remaining)}


async def chat_completions(request: Request) -> Response:
    state = request.app.state
    settings: Settings = state.settings
    metrics: RelayMetrics = state.metrics

    try:
        limit_headers = await _enforce_rate_limit(request)
    except RateLimited as exc:
        metrics.record("throttled")
        return _error_response(exc)

    try:
        raw = await _read_json(request, settings.max_body_bytes)
        normalized = normalize_request(raw, settings, state.catalog)
    except RelayError as exc:
        metrics.record("rejected")
        logger.error("rejected chat request: %s (%s)", exc.error, exc.details)
        return _error_response(exc, limit_headers)

    logger.info("using model=%s stream=%s", normalized.model, normalized.stream)
    try:
        result = await state.upstream.invoke(normalized.payload)
    except RelayError as exc:
        metrics.record("upstream_failed")
        logger.error("upstream call failed: %s", exc.details)
        return _error_response(exc, limit_headers)

    if isinstance(result, UpstreamError):
        metrics.record("upstream_failed")
        return _error_response(UpstreamFailure(result.status, result.text), limit_headers)

    metrics.record("success")
    if normalized.stream:
        metrics.record("streamed")
        emitter = ChunkEmitter(
            normalized.model,
            delay_seconds=settings.stream_delay_ms / 1000,
            is_disconnected=request.is_disconnected,
        )
        headers = {**STREAM_HEADERS, **limit_headers}
        if isinstance(result, UpstreamStream):
            return ClosingStreamingResponse(
                emitter.relay(result),
                release=result.response.aclose,
                status_code=result.status,
                media_type=result.content_type,
                headers=headers,
            )
        logger.info("provider returned a complete body, simulating stream for model=%s", normalized.model)
        metrics.record("simulated")
        return ClosingStreamingResponse(
            emitter.simulated_stream(result.body),
            status_code=result.status,
            media_type=SIMULATED_MEDIA_TYPE,
            headers=headers,
        )

    if isinstance(result, UpstreamStream):
        # Provider streamed although we did not ask for it; hand the bytes back unchanged.
        try:
            raw_body = await state.upstream.read_body(result.response)
        except RelayError as exc:
            metrics.record("upstream_failed")
            logger.error("upstream body failed: %s", exc.details)
            return _error_response(exc, limit_headers)
        return Response(raw_body, status_code=result.status, media_type=result.content_type, headers=limit_headers)

    logger.info("successful response for model=%s", normalized.model)
    return ORJSONResponse(result.body, status_code=result.status, headers=limit_headers)


async def list_models(request: Request) -> Response:
    try:
        limit_headers = await _enforce_rate_limit(request)
    except RateLimited as exc:
        request.app.state.metrics.record("throttled")
        return _error_response(exc)
    catalog: ModelCatalog = request.app.state.catalog
    created = int(time.time())
    data = [
        {
            "id": alias,
            "object": "model",
            "created": created,
            "owned_by": "huggingface",
            "permission": [],
            "root": alias,
            "parent": None,
            "full_model_id": model_id,
        }
        for alias, model_id in catalog.all_models().items()
    ]
    return ORJSONResponse({"object": "list", "data": data}, headers=limit_headers)


async def health(request: Request) -> Response:
    state = request.app.state
    uptime = int(time.monotonic() - state.started_at)
    payload = {
        "status": "ok",
        "service": state.settings.service_name,
        "model": state.settings.default_model,
        "has_token": bool(state.settings.hf_token),
        "available_models": len(state.catalog),
        "uptime": f"{uptime // 60}m {uptime % 60}s",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return ORJSONResponse(payload)


async def stats(request: Request) -> Response:
    state = request.app.state
    limiter: RateLimiter | None = state.rate_limiter
    payload = {
        "models_available": state.catalog.all_models(),
        "default_model": state.settings.default_model,
        "rate_limit": limiter.description if limiter else "disabled",
        "features": FEATURES,
        "counters": state.metrics.snapshot(),
    }
    return ORJSONResponse(payload)


async def internal_error(request: Request, exc: Exception) -> Response:
    logger.exception("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    settings: Settings = request.app.state.settings
    request.app.state.metrics.record("failed")
    details = str(exc) if settings.debug else "Contact the administrator"
    return ORJSONResponse({"error": "Internal server error", "details": details}, status_code=500)


def create_app(
    settings: Settings | None = None,
    catalog: ModelCatalog | None = None,
    upstream: UpstreamClient | None = None,
    rate_limiter: RateLimiter | None = None,
) -> Starlette:
    settings = settings or load_settings()
    catalog = catalog or load_catalog(settings)
    if upstream is None:
        upstream = UpstreamClient(settings.upstream_url, settings.hf_token, settings.upstream_timeout)
    if rate_limiter is None and settings.redis_url:
        rate_limiter = RateLimiter(settings.redis_url, settings.rate_limit_max, settings.rate_limit_window)
    metrics = RelayMetrics()

    @asynccontextmanager
    async def lifespan(_: Starlette):
        if rate_limiter is not None:
            await rate_limiter.initialize()
        reporter = asyncio.get_running_loop().create_task(metrics_reporter(metrics, settings.service_name))
        logger.info("default model: %s", settings.default_model)
        logger.info("hugging face token configured: %s", "yes" if settings.hf_token else "no")
        logger.info("available models: %d", len(catalog))
        logger.info("rate limiting: %s", rate_limiter.description if rate_limiter else "disabled")
        try:
            yield
        finally:
            reporter.cancel()
            with suppress(asyncio.CancelledError):
                await reporter
            await upstream.close()
            if rate_limiter is not None:
                await rate_limiter.close()

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/stats", stats, methods=["GET"]),
        Route("/v1/models", list_models, methods=["GET"]),
        Route("/v1/chat/completions", chat_completions, methods=["POST"]),
    ]
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
            allow_credentials=False,
        ),
        Middleware(RequestLogMiddleware),
    ]
    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={Exception: internal_error},
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.upstream = upstream
    app.state.rate_limiter = rate_limiter
    app.state.metrics = metrics
    app.state.started_at = time.monotonic()
    return app


def serve() -> None:
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    serve()
