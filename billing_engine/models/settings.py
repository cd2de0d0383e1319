"""Plan definitions and engine settings models.

Models from billing.yaml configuration.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class PlanDefinition(BaseModel):
    """Billable plan definition from configuration."""

    id: str = Field(..., description="Plan ID")
    name: str = Field(..., description="Human-readable plan name")
    price: int = Field(..., ge=0, description="Price in minor currency units (100 = 1.00)")
    currency: str = Field(default="NGN", description="ISO 4217 currency code")
    billing_period: str = Field(default="P1M", description="ISO 8601 duration (e.g., P1M, P1Y)")
    grace_period: Optional[str] = Field(None, description="ISO 8601 grace period (e.g., P7D)")
    description: Optional[str] = Field(None, description="Plan description")

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    class Config:
        json_schema_extra = {
            "example": {
                "id": "plan_pro_monthly",
                "name": "Pro Monthly",
                "price": 1500000,
                "currency": "NGN",
                "billing_period": "P1M",
                "grace_period": "P7D",
            }
        }


class LockSettings(BaseModel):
    """Activation lock provider settings."""

    backend: Literal["memory", "redis"] = Field(default="memory", description="Lock provider backend")
    acquire_timeout_seconds: float = Field(default=30.0, gt=0, description="Max wait for a lock")
    lease_ttl_seconds: float = Field(default=30.0, gt=0, description="Lease expiry for redis locks")
    poll_interval_seconds: float = Field(default=0.05, gt=0, description="Redis acquire poll interval")
    key_prefix: str = Field(default="lock:", description="Lock key namespace")


class IdempotencySettings(BaseModel):
    """Idempotency store settings."""

    backend: Literal["memory", "redis"] = Field(default="memory", description="Idempotency store backend")
    ttl_seconds: int = Field(default=300, gt=0, description="Cached result lifetime")
    key_prefix: str = Field(default="idempotency:", description="Idempotency key namespace")


class RedisSettings(BaseModel):
    """Shared Redis connection settings (multi-node deployments)."""

    url: str = Field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        description="Redis connection URL",
    )
    socket_timeout_seconds: float = Field(default=5.0, gt=0)


class RetryConfig(BaseModel):
    """Exponential backoff settings for the retry engine."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.25, ge=0)
    max_delay_seconds: float = Field(default=5.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    transient_database_codes: list[str] = Field(
        default_factory=lambda: ["40001", "40P01", "55P03", "57P01"],
        description="Database error codes treated as transient",
    )

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff delay after a failed attempt (1-based)."""
        delay = self.base_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class GracePeriodConfig(BaseModel):
    """Grace period enforcement settings."""

    grace_period_days: int = Field(default=7, ge=0)
    warning_days: list[int] = Field(default_factory=lambda: [3, 1])
    enable_auto_cancel: bool = Field(default=True)
    max_workers: int = Field(default=4, ge=1, description="Concurrent subscriptions per sweep")

    class Config:
        json_schema_extra = {
            "example": {
                "grace_period_days": 7,
                "warning_days": [3, 1],
                "enable_auto_cancel": True,
                "max_workers": 4,
            }
        }


class MatcherSettings(BaseModel):
    """Payment matcher thresholds."""

    min_confidence: int = Field(default=70, ge=0, le=100)
    lookback_hours: int = Field(default=72, gt=0)
    amount_tolerance_ratio: float = Field(default=0.02, ge=0)
    amount_tolerance_absolute: int = Field(default=500, ge=0, description="Minimum tolerance in minor units")
    max_candidates: int = Field(default=5, ge=1)


class NotificationSettings(BaseModel):
    """Pub/Sub notification settings."""

    enabled: bool = Field(default=False, description="Publish billing events")
    project_id: str = Field(default="billing-local", description="GCP project ID")
    topic: str = Field(default="billing-events", description="Pub/Sub topic name")


class WebhookSettings(BaseModel):
    """Payment provider webhook settings."""

    secret: Optional[str] = Field(
        default_factory=lambda: os.getenv("BILLING_WEBHOOK_SECRET"),
        description="Shared secret for webhook signature verification",
    )

    @field_validator("secret", mode="before")
    @classmethod
    def _secret_from_env(cls, value: Optional[str]) -> Optional[str]:
        return value or os.getenv("BILLING_WEBHOOK_SECRET")


class BillingSettings(BaseModel):
    """Complete billing.yaml configuration."""

    plans: list[PlanDefinition] = Field(default_factory=list, description="Plan definitions")
    lock: LockSettings = Field(default_factory=LockSettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    grace_period: GracePeriodConfig = Field(default_factory=GracePeriodConfig)
    matcher: MatcherSettings = Field(default_factory=MatcherSettings)
    incomplete_expiry_hours: int = Field(default=23, gt=0)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
