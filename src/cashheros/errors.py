"""Typed API errors and the uniform JSON envelope."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from fastapi.responses import JSONResponse


class ErrorKind(StrEnum):
    """Error kinds surfaced in the envelope."""

    BAD_REQUEST = "bad-request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    UNPROCESSABLE = "unprocessable"
    TOO_MANY_REQUESTS = "too-many-requests"
    INTERNAL = "internal"
    TIMEOUT = "timeout"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNPROCESSABLE: 422,
    ErrorKind.TOO_MANY_REQUESTS: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.TIMEOUT: 500,
}

GENERIC_INTERNAL_MESSAGE = "Internal server error"


class ApiError(Exception):
    """An error carrying its envelope kind.

    Pipeline stages return instances as values; route handlers raise them.
    Either way the shaping stage renders the same envelope.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message = GENERIC_INTERNAL_MESSAGE

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        self.headers = headers or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_envelope(self) -> dict[str, Any]:
        error: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_envelope(),
            headers=self.headers,
        )


class BadRequestError(ApiError):
    kind = ErrorKind.BAD_REQUEST
    default_message = "Request validation failed"


class UnauthorizedError(ApiError):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Authentication required"


class ForbiddenError(ApiError):
    kind = ErrorKind.FORBIDDEN
    default_message = "Access denied"


class NotFoundError(ApiError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class ConflictError(ApiError):
    kind = ErrorKind.CONFLICT
    default_message = "Resource already exists"


class UnprocessableError(ApiError):
    kind = ErrorKind.UNPROCESSABLE
    default_message = "Request body could not be processed"


class TooManyRequestsError(ApiError):
    kind = ErrorKind.TOO_MANY_REQUESTS
    default_message = "Too many requests, please try again later"

    def __init__(self, message: str | None = None, *, retry_after: int, **kwargs: Any) -> None:
        details = {"retryAfter": retry_after, **(kwargs.pop("details", None) or {})}
        headers = {"Retry-After": str(retry_after), **(kwargs.pop("headers", None) or {})}
        super().__init__(message, details=details, headers=headers)
        self.retry_after = retry_after


class InternalError(ApiError):
    kind = ErrorKind.INTERNAL

    def __init__(self, correlation_id: str) -> None:
        super().__init__(details={"correlationId": correlation_id})
        self.correlation_id = correlation_id


class HandlerTimeoutError(ApiError):
    kind = ErrorKind.TIMEOUT
    default_message = "The request took too long to complete"


class ServiceUnavailableError(ApiError):
    """Readiness failure; an ``internal`` envelope served with 503."""

    kind = ErrorKind.INTERNAL
    default_message = "Service unavailable"

    @property
    def status_code(self) -> int:
        return 503


class PersistenceError(Exception):
    """Raised by the persistence collaborator; never shown to clients."""


class ProviderVerificationError(Exception):
    """Raised when an identity provider rejects or cannot verify a credential."""


def success(data: Any = None) -> dict[str, Any]:
    """Wrap handler output in the success envelope."""
    return {"success": True, "data": data}
