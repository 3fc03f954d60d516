"""
Structured error handling with stable error codes.

No stack traces or storage details are exposed to clients. All errors are
mapped to stable, documented error codes for reliable client handling.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "E1000"
    INVALID_ARGUMENT = "E1001"
    NOT_FOUND = "E1002"
    RATE_LIMITED = "E1005"
    CONFLICT = "E1006"

    # Authentication errors (2xxx)
    UNAUTHORIZED = "E2000"
    SESSION_EXPIRED = "E2002"

    # Provider errors (4xxx)
    STREAM_FAILED = "E4003"
    PROVIDER_UNAVAILABLE = "E4000"

    # Persistence errors (5xxx)
    PERSISTENCE_FAILED = "E5100"


@dataclass(frozen=True)
class ErrorResponse:
    """Structured error response for API.

    Format: {error: {code, message, request_id, details?}}
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        error: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.request_id:
            error["request_id"] = self.request_id
        if self.details:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    """Base application error with structured error detail."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self, request_id: str | None = None) -> ErrorResponse:
        """Create error response with request ID."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            request_id=request_id,
            details=self.details,
        )


class InvalidArgumentError(AppError):
    """Malformed identifier, timestamp or field (400)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.INVALID_ARGUMENT, message, 400, details)


class NotFoundError(AppError):
    """Resource missing or not owned by the caller (404).

    Ownership failures use this error too, so callers cannot probe for
    the existence of other users' chats.
    """

    def __init__(self, message: str = "Resource not found"):
        super().__init__(ErrorCode.NOT_FOUND, message, 404)


class UnauthorizedError(AppError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401)


class SessionExpiredError(AppError):
    """Session expired (401)."""

    def __init__(self, message: str = "Session expired"):
        super().__init__(ErrorCode.SESSION_EXPIRED, message, 401)


class RateLimitError(AppError):
    """Rate limit exceeded (429).

    Admission denials use a flat body, ``{error, message, retryAfter}``,
    rather than the structured error envelope.
    """

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            ErrorCode.RATE_LIMITED,
            f"Rate limit exceeded. Try again in {retry_after} seconds.",
            429,
            {"retryAfter": retry_after},
        )

    def to_body(self) -> dict[str, Any]:
        return {
            "error": "Too many requests",
            "message": self.message,
            "retryAfter": self.retry_after,
        }


class TurnInProgressError(AppError):
    """A generation turn is already running for the chat (409)."""

    def __init__(self, message: str = "A response is already being generated for this chat"):
        super().__init__(ErrorCode.CONFLICT, message, 409)


class PersistenceError(AppError):
    """Unexpected storage fault (500). Message is always generic."""

    def __init__(
        self, message: str = "Failed to save data", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PERSISTENCE_FAILED, message, 500, details)


class StreamError(AppError):
    """Token stream failed or stalled (502)."""

    def __init__(
        self, message: str = "Stream failed", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.STREAM_FAILED, message, 502, details)


class ProviderUnavailableError(StreamError):
    """Provider unreachable (503)."""

    def __init__(
        self, message: str = "Provider unavailable", details: dict[str, Any] | None = None
    ):
        super().__init__(message, details)
        self.code = ErrorCode.PROVIDER_UNAVAILABLE
        self.status_code = 503
