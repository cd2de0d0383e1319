"""Subscription history (audit ledger) models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class HistoryAction(str, Enum):
    """Actions recorded in the subscription history ledger."""

    ACTIVATED = "activated"
    STATUS_CHANGED = "status_changed"
    PAYMENT_FAILED = "payment_failed"
    RECOVERED = "recovered"
    CANCELLED = "cancelled"
    CANCEL_SCHEDULED = "cancel_scheduled"
    MARKED_UNPAID = "marked_unpaid"
    EXPIRED = "expired"
    GRACE_PERIOD_STARTED = "grace_period_started"
    GRACE_PERIOD_WARNING = "grace_period_warning"


class TransitionSource(str, Enum):
    """Trigger that caused a transition."""

    WEBHOOK = "webhook"
    VERIFICATION = "verification"
    MANUAL = "manual"
    SCHEDULER = "scheduler"


class SubscriptionHistoryEntry(BaseModel):
    """Append-only ledger entry. Never mutated once stored."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="History entry ID")
    subscription_id: str = Field(...)
    action: HistoryAction = Field(...)
    old_value: dict[str, Any] = Field(default_factory=dict, description="Snapshot before the change")
    new_value: dict[str, Any] = Field(default_factory=dict, description="Snapshot after the change")
    reason: str = Field(..., description="Free-text reason including the triggering source")
    source: Optional[TransitionSource] = Field(None)
    created_at: datetime = Field(...)
