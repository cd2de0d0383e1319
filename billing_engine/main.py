"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from billing_engine.logging_config import configure_logging, get_logger
from billing_engine.middleware import ContextMiddleware, RequestLoggingMiddleware

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load configuration and backends on startup, flush notifications on shutdown."""
    from billing_engine.services.notifications import get_notification_dispatcher
    from billing_engine.services.subscription_engine import get_subscription_engine

    logger.info("billing_engine_starting", version=VERSION)
    try:
        engine = get_subscription_engine()
        dispatcher = get_notification_dispatcher()
        logger.info(
            "billing_engine_started",
            plans=len(engine.plan_repo),
            lock_backend=engine.lock.provider.backend,
            notifications="enabled" if dispatcher.is_enabled() else "disabled",
        )
        yield
    finally:
        logger.info("billing_engine_shutting_down")
        get_notification_dispatcher().shutdown()
        logger.info("billing_engine_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Billing Consistency Engine",
        description="Exactly-once subscription activation, payment matching and grace periods",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    from billing_engine.api.billing import router as billing_router

    app.include_router(billing_router)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Health check with backend summary."""
        from billing_engine.services.subscription_engine import get_subscription_engine

        engine = get_subscription_engine()
        return {
            "status": "healthy",
            "lock_backend": engine.lock.provider.backend,
            "config": f"loaded ({len(engine.plan_repo)} plans)",
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Hide internal error detail from callers."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
