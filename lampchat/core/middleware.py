"""
Application middleware for observability and admission control.

Includes request ID injection, fixed-window rate limiting, and the
global exception handlers.
"""

import secrets
import time
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from lampchat.core.errors import AppError, ErrorCode, ErrorResponse, RateLimitError
from lampchat.core.logging import get_logger, get_request_id, request_context
from lampchat.core.rate_limiter import RateLimiter, get_client_ip

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to inject request context for logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with context."""
        request_id = request.headers.get("X-Request-ID") or secrets.token_hex(8)
        start_time = time.perf_counter()

        ctx = {
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        }
        token = request_context.set(ctx)

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                data={"duration_ms": round(duration_ms, 2)},
            )

            response.headers["X-Request-ID"] = request_id
            return response

        finally:
            request_context.reset(token)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Admission gate applying a fixed-window limiter per route family.

    ``limiters`` maps a policy name to its limiter; ``routes`` maps a path
    prefix to a policy name. Paths matching no prefix use ``"default"``.
    """

    EXEMPT_PATHS = {"/health", "/healthz", "/readyz", "/metrics", "/docs", "/redoc", "/openapi.json"}

    def __init__(
        self,
        app,
        limiters: dict[str, RateLimiter],
        routes: dict[str, str] | None = None,
    ):
        super().__init__(app)
        self.limiters = limiters
        # Longest prefix first so "/chats" is not swallowed by "/chat"
        self.routes = sorted((routes or {}).items(), key=lambda item: len(item[0]), reverse=True)

    def _policy_for(self, path: str) -> str:
        for prefix, policy in self.routes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return policy
        return "default"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Apply rate limiting to incoming requests."""
        if request.url.path in self.EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        limiter = self.limiters.get(self._policy_for(request.url.path))
        if limiter is None or limiter.max_requests <= 0:
            return await call_next(request)

        peer = request.client.host if request.client else None
        identity = get_client_ip(request.headers, peer)
        decision = limiter.admit(identity)

        if not decision.allowed:
            error = RateLimitError(decision.retry_after_seconds)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_body(),
                headers=decision.headers(),
            )

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure global exception handlers for the application."""
    from fastapi.encoders import jsonable_encoder
    from fastapi.exceptions import RequestValidationError

    @app.exception_handler(AppError)
    async def app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
        """Render structured application errors."""
        request_id = get_request_id()
        if isinstance(exc, RateLimitError):
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_body(),
                headers={"Retry-After": str(exc.retry_after)},
            )
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                data={"code": exc.code.value, "message": exc.message},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(request_id).to_dict(),
            headers={"X-Request-ID": request_id} if request_id else {},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle validation errors with structured response."""
        request_id = get_request_id()
        error_response = ErrorResponse(
            code=ErrorCode.INVALID_ARGUMENT,
            message="Validation error",
            request_id=request_id,
            details={"errors": jsonable_encoder(exc.errors())},
        )
        return JSONResponse(status_code=422, content=error_response.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        """Catch-all so no stack trace reaches the client."""
        request_id = get_request_id()
        logger.exception("Unhandled error", exc_info=exc)
        error_response = ErrorResponse(
            code=ErrorCode.INTERNAL_ERROR,
            message="An unexpected error occurred",
            request_id=request_id,
        )
        return JSONResponse(status_code=500, content=error_response.to_dict())
