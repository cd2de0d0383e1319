"""Payment models - stored payments and inbound payment data.

A payment is linked to at most one subscription and is unique per
provider reference.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    """Payment status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


_PROVIDER_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "success": PaymentStatus.SUCCEEDED,
    "succeeded": PaymentStatus.SUCCEEDED,
    "completed": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
}


def map_provider_payment_status(provider_status: str) -> PaymentStatus:
    """Map a provider payment status string to PaymentStatus (unknown -> pending)."""
    return _PROVIDER_STATUS_MAP.get(provider_status.lower(), PaymentStatus.PENDING)


class Payment(BaseModel):
    """Stored payment row."""

    id: str = Field(..., description="Payment ID")
    subscription_id: Optional[str] = Field(None, description="Linked subscription (null until matched)")
    user_id: Optional[str] = Field(None, description="Paying user")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str = Field(..., description="ISO 4217 currency code")
    status: PaymentStatus = Field(default=PaymentStatus.PENDING)

    provider_reference: str = Field(..., description="Provider payment reference (unique)")
    provider_payment_id: Optional[str] = Field(None, description="Provider transaction ID")
    authorization_code: Optional[str] = Field(None, description="Reusable card authorization")
    description: Optional[str] = Field(None)

    created_at: datetime = Field(...)
    updated_at: Optional[datetime] = Field(None)

    def set_status(self, new_status: PaymentStatus, reason: Optional[str] = None) -> None:
        """Change payment status and log the transition."""
        from billing_engine.state_logger import log_payment_status_change

        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_payment_status_change(
                payment_id=self.id,
                reference=self.provider_reference,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
                subscription_id=self.subscription_id,
            )


class Authorization(BaseModel):
    """Reusable card authorization returned by the provider."""

    authorization_code: str


class PaymentData(BaseModel):
    """Payment details handed to activation by any trigger."""

    reference: Optional[str] = Field(None, description="Provider reference (absent for manual)")
    payment_id: str = Field(..., description="Provider payment/transaction ID")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str = Field(..., description="ISO 4217 currency code")
    authorization: Optional[Authorization] = Field(None)

    class Config:
        json_schema_extra = {
            "example": {
                "reference": "pay_abc",
                "payment_id": "4099260516",
                "amount": 1500000,
                "currency": "NGN",
                "authorization": {"authorization_code": "AUTH_8dfhjjdt"},
            }
        }


class PaymentEvent(BaseModel):
    """Verified payment event as received from the provider webhook."""

    event_type: str = Field(default="charge.success", description="Provider event name")
    reference: str = Field(..., description="Provider payment reference")
    provider_payment_id: str = Field(..., description="Provider transaction ID")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str = Field(...)
    customer_email: Optional[str] = Field(None)
    metadata: dict[str, Any] = Field(default_factory=dict)
    authorization: Optional[Authorization] = Field(None)

    @property
    def explicit_subscription_id(self) -> Optional[str]:
        value = self.metadata.get("subscription_id") if self.metadata else None
        return str(value) if value else None

    def to_payment_data(self) -> PaymentData:
        return PaymentData(
            reference=self.reference,
            payment_id=self.provider_payment_id,
            amount=self.amount,
            currency=self.currency,
            authorization=self.authorization,
        )
