"""State change logging for subscriptions, payments, history and locks.

Tracks transitions with before/after values for debugging and auditing.
"""

from typing import Any, Optional

from billing_engine.logging_config import get_logger

logger = get_logger(__name__)


def _short(value: Optional[str], length: int = 24) -> Optional[str]:
    if value is None:
        return None
    return value[:length] + "..." if len(value) > length else value


def log_subscription_status_change(
    subscription_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Subscription ID
        old_status: Previous status value
        new_status: New status value
        reason: Reason for the change
        **extra_context: Additional context (user_id, source, etc.)
    """
    logger.info(
        "subscription_status_changed",
        subscription_id=subscription_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_payment_status_change(
    payment_id: str,
    reference: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log payment status change.

    Args:
        payment_id: Payment ID
        reference: Provider payment reference
        old_status: Previous payment status
        new_status: New payment status
        reason: Reason for the change
        **extra_context: Additional context
    """
    logger.info(
        "payment_status_changed",
        payment_id=payment_id,
        reference=_short(reference),
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_history_appended(
    subscription_id: str,
    action: Any,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a committed history ledger entry."""
    logger.info(
        "subscription_history_appended",
        subscription_id=subscription_id,
        action=str(getattr(action, "value", action)),
        reason=reason,
        **extra_context,
    )


def log_lock_event(
    event: str,
    key: str,
    **extra_context: Any,
) -> None:
    """Log lock acquisition, release and timeout events.

    Args:
        event: Event name (lock_acquired, lock_released, lock_timeout, ...)
        key: Lock key
        **extra_context: Additional context (waited_ms, backend, etc.)
    """
    if event == "lock_timeout":
        logger.warning(event, key=key, **extra_context)
    else:
        logger.debug(event, key=key, **extra_context)
