"""Exception hierarchy for the billing engine.

Business outcomes (not found, invalid status, already active, lock timeout)
travel as outcome values, see ``billing_engine.models.results``. The
exceptions here cover lookups, programming errors and infrastructure faults.
"""

from typing import Any, Optional


class BillingError(Exception):
    """Base exception for billing engine errors."""

    pass


class SubscriptionNotFoundError(BillingError):
    """Raised when a subscription is not found in the store."""

    pass


class PaymentNotFoundError(BillingError):
    """Raised when a payment is not found in the store."""

    pass


class PlanNotFoundError(BillingError):
    """Raised when a plan is not found in the repository."""

    pass


class DuplicatePaymentReferenceError(BillingError):
    """Raised when a second payment row would share a provider reference."""

    pass


class InvalidTransitionError(BillingError):
    """Raised when a status change is not an edge of the lifecycle graph."""

    def __init__(self, old_status: Any, new_status: Any):
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Transition {getattr(old_status, 'value', old_status)} -> "
            f"{getattr(new_status, 'value', new_status)} is not permitted"
        )


class TransientDatabaseError(BillingError):
    """Database failure carrying a driver error code (serialization, deadlock, ...)."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class LockReleaseError(BillingError):
    """Raised when a lock is released with a token that no longer owns it."""

    pass


class RetryExhaustedError(BillingError):
    """Raised when a retryable outcome persists past the retry budget."""

    def __init__(self, operation: str, attempts: int, last_failure: Any):
        self.operation = operation
        self.attempts = attempts
        self.last_failure = last_failure
        kind = getattr(last_failure, "kind", None)
        super().__init__(
            f"{operation} failed after {attempts} attempts: "
            f"{getattr(kind, 'value', kind) or last_failure}"
        )


class WebhookSignatureError(BillingError):
    """Raised when a webhook payload signature does not verify."""

    pass
