from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from pydantic import ValidationError

from .config import ModelCatalog, Settings
from .errors import InvalidRequest, Unauthorized
from .schemas import ChatCompletionRequest

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
OPTIONAL_SAMPLING_PARAMS = ("top_p", "frequency_penalty", "presence_penalty")


@dataclass(frozen=True)
class NormalizedRequest:
    model: str
    stream: bool
    payload: Dict[str, Any]


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "invalid value")


def resolve_model(model: str | None, catalog: ModelCatalog, default_model: str) -> str:
    if not model:
        return default_model
    return catalog.resolve(model)


def _with_default(value: Any, default: Any, explicit: bool) -> Any:
    if explicit:
        return default if value is None else value
    return value or default


def normalize_request(raw: Any, settings: Settings, catalog: ModelCatalog) -> NormalizedRequest:
    """Turn an inbound chat-completion body into the upstream payload.

    The credential check comes first so a misconfigured relay never touches
    the network. Optional sampling parameters are copied only when truthy,
    which drops a legitimate ``0``; ``settings.explicit_zero_params`` switches
    to presence checks instead.
    """
    if not settings.hf_token:
        raise Unauthorized("Set HF_TOKEN in the environment or .env file")

    if not isinstance(raw, dict):
        raise InvalidRequest("Request body must be a JSON object")
    messages = raw.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequest("The 'messages' field must be a non-empty array", error="Messages required")

    try:
        request = ChatCompletionRequest.model_validate(raw)
    except ValidationError as exc:
        raise InvalidRequest(_describe(exc)) from exc

    explicit = settings.explicit_zero_params
    model = resolve_model(request.model, catalog, settings.default_model)
    stream = bool(request.stream)
    payload: Dict[str, Any] = {
        "model": model,
        "messages": [message.model_dump(exclude_unset=True) for message in request.messages],
        "temperature": _with_default(request.temperature, DEFAULT_TEMPERATURE, explicit),
        "max_tokens": _with_default(request.max_tokens, DEFAULT_MAX_TOKENS, explicit),
        "stream": stream,
    }
    for name in OPTIONAL_SAMPLING_PARAMS:
        value = getattr(request, name)
        if (value is not None) if explicit else value:
            payload[name] = value
    return NormalizedRequest(model=model, stream=stream, payload=payload)
