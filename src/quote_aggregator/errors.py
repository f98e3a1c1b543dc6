from __future__ import annotations

from typing import Any

PASSTHROUGH_UPSTREAM_STATUSES = {401, 403, 422}


class QuoteAggregatorError(Exception):
    """Base error converted to the uniform ``{"error": ...}`` response shape."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        details: Any = None,
        code: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.code = code
        self.suggestion = suggestion

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        if self.code:
            payload["code"] = self.code
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


class ValidationError(QuoteAggregatorError, ValueError):
    status_code = 400


class DuplicateKeyError(ValidationError):
    pass


class NotFoundError(QuoteAggregatorError, LookupError):
    status_code = 404


class TenantMismatchError(QuoteAggregatorError):
    status_code = 403


class ConflictError(QuoteAggregatorError):
    status_code = 409


class UpstreamError(QuoteAggregatorError):
    """Raised when a third-party service answers with a non-2xx status."""

    def __init__(self, message: str, *, upstream_status: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status
        if upstream_status in PASSTHROUGH_UPSTREAM_STATUSES:
            self.status_code = int(upstream_status)
        else:
            self.status_code = 502


class UpstreamTimeoutError(UpstreamError):
    def __init__(self, message: str = "upstream timeout", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = 504
