from __future__ import annotations

from typing import Any, Dict


class RelayError(Exception):
    """Failure reported to the client before any stream has started."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, details: str, *, error: str | None = None, status_code: int | None = None) -> None:
        super().__init__(details)
        self.details = details
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.error, "details": self.details}


class Unauthorized(RelayError):
    status_code = 401
    error = "Hugging Face token not found"


class InvalidRequest(RelayError):
    status_code = 400
    error = "Invalid request"


class PayloadTooLarge(RelayError):
    status_code = 413
    error = "Request body too large"


class RateLimited(RelayError):
    status_code = 429
    error = "Too many requests"

    def __init__(self, details: str, *, retry_after: int) -> None:
        super().__init__(details)
        self.retry_after = retry_after


class UpstreamFailure(RelayError):
    """Non-2xx answer from the provider; status and raw body are forwarded."""

    error = "Error from Hugging Face"

    def __init__(self, status_code: int, raw_body: str) -> None:
        super().__init__(raw_body, status_code=status_code)

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["status"] = self.status_code
        return body


class UpstreamUnavailable(RelayError):
    status_code = 502
    error = "Upstream provider unreachable"


class UpstreamTimeout(RelayError):
    status_code = 504
    error = "Upstream provider timed out"


class StreamFault(Exception):
    """Raised inside an open stream; only ever surfaces as an error chunk."""
