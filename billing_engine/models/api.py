"""HTTP request and response models for the billing API."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from billing_engine.models.payment import Authorization, PaymentData, PaymentEvent


class CreateSubscriptionRequest(BaseModel):
    """Request to open a provisional subscription awaiting its first payment."""

    user_id: str = Field(..., description="Owning user")
    plan_id: str = Field(..., description="Plan ID from billing.yaml")
    customer_email: Optional[str] = Field(None, description="Billing email used by the matcher")
    subscription_id: Optional[str] = Field(None, description="Explicit ID (generated if omitted)")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user-123",
                "plan_id": "plan_pro_monthly",
                "customer_email": "ada@example.com",
            }
        }


class VerifyPaymentRequest(BaseModel):
    """Client poll after checkout, carrying the provider-verified transaction."""

    reference: str = Field(..., description="Provider payment reference")
    payment_id: str = Field(..., description="Provider transaction ID")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str = Field(...)
    authorization_code: Optional[str] = Field(None)

    def to_payment_data(self) -> PaymentData:
        return PaymentData(
            reference=self.reference,
            payment_id=self.payment_id,
            amount=self.amount,
            currency=self.currency,
            authorization=(
                Authorization(authorization_code=self.authorization_code)
                if self.authorization_code
                else None
            ),
        )

    class Config:
        json_schema_extra = {
            "example": {
                "reference": "pay_abc",
                "payment_id": "4099260516",
                "amount": 1500000,
                "currency": "NGN",
                "authorization_code": "AUTH_8dfhjjdt",
            }
        }


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = Field(default=True, description="Cancel now instead of at period end")
    reason: Optional[str] = Field(None)


class EnforceGracePeriodsRequest(BaseModel):
    """Optional per-run overrides of the configured sweep settings."""

    warning_days: Optional[list[int]] = Field(None)
    enable_auto_cancel: Optional[bool] = Field(None)


class SubscriptionStatusResponse(BaseModel):
    """Customer-safe view of an activation or lookup."""

    success: bool
    subscription_id: str
    status: Optional[str] = None
    reason: Optional[str] = None
    message: str


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    status: str
    subscription_id: Optional[str] = None
    reason: Optional[str] = None


def parse_provider_event(body: dict[str, Any]) -> PaymentEvent:
    """Build a PaymentEvent from a provider webhook body.

    Expected shape::

        {"event": "charge.success",
         "data": {"reference": ..., "id": ..., "amount": ..., "currency": ...,
                  "customer": {"email": ...}, "metadata": {...},
                  "authorization": {"authorization_code": ...}}}

    Raises:
        ValueError: If required fields are missing
    """
    data = body.get("data") or {}
    reference = data.get("reference")
    if not body.get("event") or not reference:
        raise ValueError("Webhook payload is missing event or data.reference")

    metadata = data.get("metadata")
    authorization = data.get("authorization") or {}
    customer = data.get("customer") or {}

    return PaymentEvent(
        event_type=body["event"],
        reference=str(reference),
        provider_payment_id=str(data.get("id") or reference),
        amount=int(data.get("amount") or 0),
        currency=str(data.get("currency") or ""),
        customer_email=customer.get("email"),
        metadata=metadata if isinstance(metadata, dict) else {},
        authorization=(
            Authorization(authorization_code=authorization["authorization_code"])
            if authorization.get("authorization_code")
            else None
        ),
    )
