"""Core module with logging, errors, rate limiting, and middleware."""

from lampchat.core.errors import (
    AppError,
    ErrorCode,
    ErrorResponse,
    InvalidArgumentError,
    NotFoundError,
    PersistenceError,
    ProviderUnavailableError,
    RateLimitError,
    SessionExpiredError,
    StreamError,
    TurnInProgressError,
    UnauthorizedError,
)
from lampchat.core.logging import get_logger, get_request_id, setup_logging
from lampchat.core.rate_limiter import (
    ClientWindow,
    RateLimitDecision,
    RateLimiter,
    get_client_ip,
)

__all__ = [
    # Errors
    "AppError",
    "ErrorCode",
    "ErrorResponse",
    "InvalidArgumentError",
    "NotFoundError",
    "PersistenceError",
    "ProviderUnavailableError",
    "RateLimitError",
    "SessionExpiredError",
    "StreamError",
    "TurnInProgressError",
    "UnauthorizedError",
    # Logging
    "get_logger",
    "get_request_id",
    "setup_logging",
    # Rate limiting
    "ClientWindow",
    "RateLimitDecision",
    "RateLimiter",
    "get_client_ip",
]
