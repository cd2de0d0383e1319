"""Subscription status and lifecycle models.

Includes subscription statuses, the permitted transition table and the
subscription record itself.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Subscription status values as stored in the billing database."""

    INCOMPLETE = "incomplete"  # Created, waiting for the first payment
    ACTIVE = "active"  # Paid and within the current period
    PAST_DUE = "past_due"  # Renewal payment failed, inside grace window
    INCOMPLETE_EXPIRED = "incomplete_expired"  # First payment never arrived
    CANCELED = "canceled"  # Explicitly canceled or grace period exhausted
    UNPAID = "unpaid"  # Irrecoverable billing failure


TERMINAL_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    }
)

# Statuses a successful payment can move to ACTIVE
ACTIVATABLE_STATUSES = frozenset({SubscriptionStatus.INCOMPLETE, SubscriptionStatus.PAST_DUE})

PERMITTED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.INCOMPLETE_EXPIRED,
            SubscriptionStatus.UNPAID,
        }
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.UNPAID,
        }
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.UNPAID,
        }
    ),
    SubscriptionStatus.INCOMPLETE_EXPIRED: frozenset(),
    SubscriptionStatus.CANCELED: frozenset(),
    SubscriptionStatus.UNPAID: frozenset(),
}


def is_transition_permitted(old: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    """Check whether ``old -> new`` is an edge of the lifecycle graph."""
    return new in PERMITTED_TRANSITIONS[old]


class Subscription(BaseModel):
    """Subscription record owned by the billing engine."""

    id: str = Field(..., description="Subscription ID")
    user_id: str = Field(..., description="Owning user")
    customer_email: Optional[str] = Field(None, description="Billing email of the customer")
    plan_id: str = Field(..., description="Plan reference")

    status: SubscriptionStatus = Field(default=SubscriptionStatus.INCOMPLETE)

    # Billing period
    current_period_start: Optional[datetime] = Field(None)
    current_period_end: Optional[datetime] = Field(None)
    next_billing_date: Optional[datetime] = Field(None)
    cancel_at_period_end: bool = Field(default=False)

    # Dunning
    retry_count: int = Field(default=0, ge=0, description="Failed renewal attempts")
    grace_period_end: Optional[datetime] = Field(None)
    last_payment_attempt: Optional[datetime] = Field(None)

    provider_subscription_id: Optional[str] = Field(None, description="Provider-side subscription code")

    created_at: datetime = Field(..., description="Creation time")
    updated_at: Optional[datetime] = Field(None)
    canceled_at: Optional[datetime] = Field(None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Move to a new status along a permitted edge and log the transition.

        Args:
            new_status: Status to transition to
            reason: Reason for the change (includes the triggering source)

        Raises:
            InvalidTransitionError: If the edge is not part of the lifecycle graph
        """
        from billing_engine.errors import InvalidTransitionError
        from billing_engine.state_logger import log_subscription_status_change

        old_status = self.status
        if old_status == new_status:
            return
        if not is_transition_permitted(old_status, new_status):
            raise InvalidTransitionError(old_status, new_status)

        self.status = new_status
        log_subscription_status_change(
            subscription_id=self.id,
            old_status=old_status.value,
            new_status=new_status.value,
            reason=reason,
            user_id=self.user_id,
        )

    def snapshot(self) -> dict[str, Any]:
        """JSON-able view of the billing-relevant fields, used in history entries."""
        return self.model_dump(
            mode="json",
            include={
                "status",
                "plan_id",
                "current_period_start",
                "current_period_end",
                "next_billing_date",
                "cancel_at_period_end",
                "retry_count",
                "grace_period_end",
                "provider_subscription_id",
            },
        )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "sub_1",
                "user_id": "user-123",
                "customer_email": "ada@example.com",
                "plan_id": "plan_pro_monthly",
                "status": "incomplete",
                "cancel_at_period_end": False,
                "retry_count": 0,
                "created_at": "2026-01-01T00:00:00Z",
            }
        }
