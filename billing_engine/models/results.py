"""Operation outcomes and result models.

Every lock-protected operation reports what happened as a value: ``Ok``,
``RetryableError`` or ``PermanentError``. The failure kind is fixed where
the failure originates, so callers switch on the tag instead of parsing
messages.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.payment import Payment
from billing_engine.models.subscription import Subscription


class FailureKind(str, Enum):
    """Closed set of failure tags."""

    LOCK_TIMEOUT = "lock_timeout"
    CONNECTION_ERROR = "connection_error"
    TRANSIENT_DATABASE_ERROR = "transient_database_error"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    INVALID_STATUS = "invalid_status"
    ALREADY_ACTIVE = "already_active"
    LOW_CONFIDENCE_MATCH = "low_confidence_match"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {
        FailureKind.LOCK_TIMEOUT,
        FailureKind.CONNECTION_ERROR,
        FailureKind.TRANSIENT_DATABASE_ERROR,
    }
)


class Ok(BaseModel):
    """Successful outcome carrying the operation's value."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: Any = None

    @property
    def is_ok(self) -> bool:
        return True


class RetryableError(BaseModel):
    """Transient failure; the retry engine may run the operation again."""

    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    detail: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return False


class PermanentError(BaseModel):
    """Failure that retrying cannot fix; returned to the caller immediately."""

    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    detail: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return False


Outcome = Union[Ok, RetryableError, PermanentError]


def failure(kind: FailureKind, detail: Optional[str] = None) -> Union[RetryableError, PermanentError]:
    """Build the failure outcome matching the kind's classification."""
    if kind.retryable:
        return RetryableError(kind=kind, detail=detail)
    return PermanentError(kind=kind, detail=detail)


class TransitionResult(BaseModel):
    """Structured result of a subscription transition, safe to cache."""

    success: bool
    reason: Optional[str] = None
    subscription: Optional[Subscription] = None
    payment: Optional[Payment] = None

    @classmethod
    def from_failure(cls, outcome: Union[RetryableError, PermanentError]) -> "TransitionResult":
        """Result for a failure outcome. ``already_active`` counts as success."""
        return cls(
            success=outcome.kind == FailureKind.ALREADY_ACTIVE,
            reason=outcome.kind.value,
        )


class ActivationResponse(BaseModel):
    """Envelope returned by activate_subscription."""

    result: TransitionResult
    is_new: bool = Field(default=True, description="False when served from the idempotency store")
    from_cache: bool = Field(default=False)


class SubscriptionMatch(BaseModel):
    """Candidate subscription for an ambiguous payment event."""

    subscription_id: str
    confidence: int = Field(..., ge=0, le=100)
    match_reasons: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    priority: int = Field(default=0, description="Tie-breaker, higher wins")


class MatchValidation(BaseModel):
    """Pre-activation validation of a match."""

    is_valid: bool
    reason: Optional[str] = None


class AmountValidationResult(BaseModel):
    """Comparison of a paid amount against a plan price."""

    is_valid: bool
    expected_amount: int
    actual_amount: int
    discrepancy: int
    discrepancy_ratio: float
    tolerance: float
    reason: Optional[str] = None
    suggested_action: Literal["accept", "review", "reject"]


class GraceEnforcementReport(BaseModel):
    """Summary of one grace period sweep."""

    processed: int = 0
    cancelled: int = 0
    warned: int = 0
    errors: list[str] = Field(default_factory=list)


class ExpiringGracePeriod(BaseModel):
    """Subscription approaching the end of its grace period."""

    subscription_id: str
    customer_email: Optional[str]
    plan_name: str
    days_remaining: int
    grace_period_end: datetime


class EventProcessingResult(BaseModel):
    """Outcome of handling one provider payment event."""

    status: Literal["processed", "unmatched", "rejected", "ignored"]
    subscription_id: Optional[str] = None
    result: Optional[TransitionResult] = None
    match: Optional[SubscriptionMatch] = None
    reason: Optional[str] = None
