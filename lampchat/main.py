"""
LampChat Backend Application.

FastAPI application with structured logging, error handling,
and rate limiting in front of the chat routes.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lampchat import __version__
from lampchat.api import chat_router, chats_router, health_router
from lampchat.config import Settings, get_settings
from lampchat.core import RateLimiter, get_logger, setup_logging
from lampchat.core.middleware import (
    RateLimitMiddleware,
    RequestContextMiddleware,
    setup_exception_handlers,
)
from lampchat.db import dispose_engine, verify_database_connection

logger = get_logger(__name__)

# Path prefix -> limiter policy; anything else uses "default".
RATE_LIMIT_ROUTES = {
    "/chat": "chat",
    "/chats": "data",
}


def build_rate_limiters(settings: Settings) -> dict[str, RateLimiter]:
    """One independent limiter per policy."""
    quotas = {
        "default": settings.rate_limit_max_requests,
        "chat": settings.rate_limit_chat_max_requests,
        "data": settings.rate_limit_data_max_requests,
    }
    return {
        name: RateLimiter(
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=quota,
            sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
            name=name,
        )
        for name, quota in quotas.items()
    }


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting LampChat backend",
        data={
            "host": settings.host,
            "port": settings.port,
            "debug": settings.debug,
            "cors_origins": settings.cors_origins_list,
        },
    )

    # Verify database connectivity (does NOT run migrations)
    if verify_database_connection():
        logger.info("Database connection verified")
    else:
        logger.warning("Database connection failed - run 'alembic upgrade head' to initialize")

    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY is not set - streaming requests will fail")

    _app.state.start_time = datetime.now(UTC)

    for limiter in _app.state.rate_limiters.values():
        limiter.start()

    yield

    # Shutdown
    logger.info("Shutting down LampChat backend")
    for limiter in _app.state.rate_limiters.values():
        await limiter.stop()
    orchestrator = getattr(_app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.aclose()
    source = getattr(_app.state, "stream_source", None)
    if source is not None:
        await source.aclose()
    dispose_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="LampChat",
        description="Chat backend streaming model output with durable history",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)

    app.state.rate_limiters = build_rate_limiters(settings)

    # Add middleware (order matters - last added = first executed)
    # 1. Rate limiting (per client IP, in-memory)
    app.add_middleware(
        RateLimitMiddleware,
        limiters=app.state.rate_limiters,
        routes=RATE_LIMIT_ROUTES,
    )

    # 2. Request context (inject request ID, log requests)
    app.add_middleware(RequestContextMiddleware)

    # 3. CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    # Register routers
    app.include_router(health_router)
    app.include_router(chats_router)
    app.include_router(chat_router)

    return app


# Create application instance
app = create_app()
