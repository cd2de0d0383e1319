"""FastAPI middleware for request logging and billing context."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from billing_engine.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with a correlation id.

    The id is bound to every log line emitted while the request is handled
    and echoed back in the ``X-Request-ID`` header. An incoming
    ``X-Request-ID`` is reused so retries from a provider can be correlated.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_context(request_id=request_id)

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
            )
        else:
            logger.info("request_started", method=request.method, path=request.url.path)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        finally:
            clear_context()


def subscription_id_from_path(path: str) -> str | None:
    """Subscription id segment of ``/billing/subscriptions/{id}/...`` paths."""
    parts = [p for p in path.split("/") if p]
    try:
        index = parts.index("subscriptions")
    except ValueError:
        return None
    if len(parts) > index + 1:
        return parts[index + 1]
    return None


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds the subscription id from the path to the logging context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        subscription_id = subscription_id_from_path(request.url.path)
        if subscription_id:
            bind_context(subscription_id=subscription_id)
        return await call_next(request)
