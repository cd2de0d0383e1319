"""structlog setup for the billing engine.

Every event carries the app name, level, logger name and an ISO UTC timestamp,
plus whatever billing context (request_id, subscription_id, source) is bound
for the current call. Customer emails, card authorization codes and webhook
signatures are masked before any renderer sees them.
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "billing-engine"


def _mask_email(value: str) -> str:
    if "@" not in value:
        return value[:4] + "***"
    local, _, domain = value.partition("@")
    return f"{local[:2]}***@{domain}"


def _mask_prefix(value: str) -> str:
    return value[:4] + "***"


MASKS: dict[str, Callable[[str], str]] = {
    "customer_email": _mask_email,
    "authorization_code": _mask_prefix,
    "signature": _mask_prefix,
}


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def mask_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace customer data in known fields with a short masked prefix."""
    for key, mask in MASKS.items():
        value = event_dict.get(key)
        if isinstance(value, str) and value:
            event_dict[key] = mask(value)
    return event_dict


def is_debug_mode() -> bool:
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def drop_debug_events(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Discard debug events unless LOG_LEVEL=DEBUG."""
    if method_name == "debug" and not is_debug_mode():
        raise structlog.DropEvent
    return event_dict


def _enrichment_processors(include_timestamp: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]
    if include_timestamp:
        chain.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    chain += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        mask_sensitive_fields,
    ]
    return chain


def _renderer(json_format: bool) -> Processor:
    if json_format:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown names fall back to INFO)
        json_format: One JSON object per line when True, console output otherwise
        include_timestamp: Add an ISO 8601 UTC ``timestamp`` field
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = _enrichment_processors(include_timestamp)
    if level > logging.DEBUG:
        processors.append(drop_debug_events)
    processors.append(_renderer(json_format))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind values included in every later event of this context.

    Example:
        bind_context(request_id="abc123", subscription_id="sub_1")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Bind context for a block, restoring earlier values for the same keys on exit.

    Example:
        with bound_context(subscription_id="sub_1", source="webhook"):
            logger.info("activation_started")
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
