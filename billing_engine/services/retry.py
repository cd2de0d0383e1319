"""Retry engine with classification-aware exponential backoff.

Operations report failures as outcome values. The engine switches on the
outcome type:

- ``Ok`` / ``PermanentError``: returned immediately.
- ``RetryableError``: retried; after the last attempt ``RetryExhaustedError``
  is raised.

Exceptions are classified once, by type: connection and timeout errors and
``TransientDatabaseError`` with a configured code are retried and the last
one is re-raised when the budget runs out. Anything else propagates on the
first attempt.
"""

import time
from typing import Any, Callable, Optional

import redis

from billing_engine.config import get_config
from billing_engine.errors import RetryExhaustedError, TransientDatabaseError
from billing_engine.logging_config import get_logger
from billing_engine.models import FailureKind, PermanentError, RetryableError, RetryConfig

logger = get_logger(__name__)

_CONNECTION_ERRORS = (
    ConnectionError,
    TimeoutError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)


def classify_exception(error: BaseException, config: RetryConfig) -> Optional[FailureKind]:
    """Map an exception to a retryable failure kind.

    Returns:
        The failure kind when the error is transient, None otherwise
    """
    if isinstance(error, TransientDatabaseError):
        if error.code in config.transient_database_codes:
            return FailureKind.TRANSIENT_DATABASE_ERROR
        return None
    if isinstance(error, _CONNECTION_ERRORS):
        return FailureKind.CONNECTION_ERROR
    return None


def _outcome_label(outcome: Any) -> str:
    if isinstance(outcome, (RetryableError, PermanentError)):
        return outcome.kind.value
    return "ok"


class RetryEngine:
    """Runs operations under a retry budget.

    Args:
        config: Backoff settings (defaults to ``retry`` from billing.yaml)
        sleep: Sleep function, replaced in tests
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or get_config().retry_config
        self._sleep = sleep

    def run(self, operation: Callable[[], Any], name: str = "operation") -> Any:
        """Execute ``operation`` until it succeeds, fails permanently, or the budget ends.

        Args:
            operation: Zero-argument callable returning an outcome value
            name: Operation name for logs

        Returns:
            The first non-retryable outcome

        Raises:
            RetryExhaustedError: When the last attempt returned a RetryableError
            Exception: The last transient exception when attempts run out, or
                any non-transient exception immediately
        """
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                outcome = operation()
            except Exception as e:
                kind = classify_exception(e, self.config)
                if kind is None:
                    logger.error(
                        "retry_attempt_failed",
                        operation=name,
                        attempt=attempt,
                        outcome="exception",
                        error_type=type(e).__name__,
                        retryable=False,
                    )
                    raise

                logger.warning(
                    "retry_attempt_failed",
                    operation=name,
                    attempt=attempt,
                    outcome=kind.value,
                    error_type=type(e).__name__,
                    error=str(e),
                    retryable=True,
                )
                if attempt == max_attempts:
                    logger.error("retry_exhausted", operation=name, attempts=attempt, outcome=kind.value)
                    raise
                self._backoff(name, attempt)
                continue

            if isinstance(outcome, RetryableError):
                logger.warning(
                    "retry_attempt_failed",
                    operation=name,
                    attempt=attempt,
                    outcome=outcome.kind.value,
                    detail=outcome.detail,
                    retryable=True,
                )
                if attempt == max_attempts:
                    logger.error(
                        "retry_exhausted",
                        operation=name,
                        attempts=attempt,
                        outcome=outcome.kind.value,
                    )
                    raise RetryExhaustedError(name, attempt, outcome)
                self._backoff(name, attempt)
                continue

            logger.info(
                "retry_attempt_completed",
                operation=name,
                attempt=attempt,
                outcome=_outcome_label(outcome),
            )
            return outcome

        # max_attempts >= 1, so the loop always returns or raises
        raise RuntimeError(f"{name}: retry loop ended without an outcome")

    def _backoff(self, name: str, attempt: int) -> None:
        delay = self.config.delay_for_attempt(attempt)
        logger.debug("retry_backoff", operation=name, attempt=attempt, delay_seconds=delay)
        if delay > 0:
            self._sleep(delay)


def with_retry(
    operation: Callable[[], Any],
    config: Optional[RetryConfig] = None,
    name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Run ``operation`` through a ``RetryEngine``."""
    return RetryEngine(config, sleep=sleep).run(operation, name)
