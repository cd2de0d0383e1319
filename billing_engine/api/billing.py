"""Billing API - HTTP adapter over the billing engine.

Implements:
- POST /billing/webhook - Payment provider webhook (signed)
- POST /billing/subscriptions - Open a provisional subscription
- POST /billing/subscriptions/{subscription_id}/verify - Client poll after checkout
- POST /billing/subscriptions/{subscription_id}/activate - Manual/admin activation
- POST /billing/subscriptions/{subscription_id}/cancel - Cancel a subscription
- POST /billing/grace-periods/enforce - Scheduler hook for the grace period sweep
- GET /billing/subscriptions/{subscription_id} - Current state
- GET /billing/subscriptions/{subscription_id}/history - Audit trail

Status codes: 200 for success and ``already_active``; 404/409 for permanent
failures on admin and poll endpoints; 200 for permanent failures on the
webhook so the provider stops redelivering; 202 for unmatched webhook
payments; 503 when transient failures outlive the retry budget.
"""

import hashlib
import hmac
import json
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Request, Response
from starlette.concurrency import run_in_threadpool

from billing_engine.config import get_config
from billing_engine.errors import (
    PlanNotFoundError,
    RetryExhaustedError,
    SubscriptionNotFoundError,
    WebhookSignatureError,
)
from billing_engine.logging_config import get_logger
from billing_engine.models import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    EnforceGracePeriodsRequest,
    FailureKind,
    GraceEnforcementReport,
    Ok,
    PaymentData,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatusResponse,
    TransitionResult,
    TransitionSource,
    VerifyPaymentRequest,
    WebhookAck,
    parse_provider_event,
)
from billing_engine.services.activation import get_activation_service
from billing_engine.services.event_processor import get_event_processor
from billing_engine.services.grace_period import GracePeriodEnforcer
from billing_engine.services.retry import classify_exception
from billing_engine.services.subscription_engine import get_subscription_engine

logger = get_logger(__name__)
router = APIRouter(tags=["Billing API"], prefix="/billing")

SIGNATURE_HEADER = "x-paystack-signature"

_PERMANENT_STATUS_CODES = {
    FailureKind.SUBSCRIPTION_NOT_FOUND.value: 404,
    FailureKind.INVALID_STATUS.value: 409,
    FailureKind.LOW_CONFIDENCE_MATCH.value: 409,
}

_CUSTOMER_MESSAGES = {
    None: "Subscription activated",
    FailureKind.ALREADY_ACTIVE.value: "Subscription is already active",
    FailureKind.SUBSCRIPTION_NOT_FOUND.value: "Subscription not found",
    FailureKind.INVALID_STATUS.value: "Subscription cannot be activated in its current state",
}


def compute_signature(raw_body: bytes, secret: str) -> str:
    """HMAC-SHA512 hex digest of a webhook body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check a webhook signature header against the shared secret.

    Raises:
        WebhookSignatureError: If the secret is unset, the header is missing,
            or the digest does not match
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing signature header")
    if not hmac.compare_digest(compute_signature(raw_body, secret), signature):
        raise WebhookSignatureError("Signature mismatch")


def _is_transient(error: Exception) -> bool:
    if isinstance(error, RetryExhaustedError):
        return True
    return classify_exception(error, get_config().retry_config) is not None


def _service_unavailable() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "error": "service_unavailable",
            "message": "The request could not be completed, please retry later",
        },
    )


def _status_response(subscription_id: str, result: TransitionResult) -> SubscriptionStatusResponse:
    """Map an activation result to a customer-safe response or raise 404/409."""
    if not result.success:
        status_code = _PERMANENT_STATUS_CODES.get(result.reason, 409)
        raise HTTPException(
            status_code=status_code,
            detail={
                "error": result.reason,
                "message": _CUSTOMER_MESSAGES.get(result.reason, "Request could not be completed"),
            },
        )

    status = None
    if result.subscription is not None:
        status = result.subscription.status.value
    else:
        current = get_subscription_engine().subscriptions.find(subscription_id)
        status = current.status.value if current else None

    return SubscriptionStatusResponse(
        success=True,
        subscription_id=subscription_id,
        status=status,
        reason=result.reason,
        message=_CUSTOMER_MESSAGES.get(result.reason, "Subscription activated"),
    )


def _activate(
    subscription_id: str, payment_data: PaymentData, source: TransitionSource
) -> SubscriptionStatusResponse:
    try:
        response = get_activation_service().activate_subscription(
            subscription_id, payment_data, source
        )
    except Exception as e:
        if _is_transient(e):
            logger.error(
                "activation_unavailable",
                subscription_id=subscription_id,
                source=source.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _service_unavailable()
        raise
    return _status_response(subscription_id, response.result)


@router.post("/webhook", response_model=WebhookAck, summary="Payment provider webhook")
async def payment_webhook(
    request: Request,
    response: Response,
    x_paystack_signature: Optional[str] = Header(None),
) -> WebhookAck:
    """Receive a signed payment event from the provider.

    Returns:
        WebhookAck. 200 once the event is handled (including permanent
        failures and replays), 202 when the payment could not be matched.

    Raises:
        401: Signature missing or invalid
        400: Payload is not a valid event
        503: Transient failure, the provider should redeliver
    """
    raw_body = await request.body()
    try:
        verify_signature(raw_body, x_paystack_signature, get_config().settings.webhook.secret)
    except WebhookSignatureError as e:
        logger.warning("webhook_signature_rejected", error=str(e))
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_signature", "message": "Webhook signature verification failed"},
        )

    try:
        event = parse_provider_event(json.loads(raw_body))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("webhook_payload_invalid", error=str(e))
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_payload", "message": "Webhook payload could not be parsed"},
        )

    try:
        result = await run_in_threadpool(get_event_processor().process_event, event)
    except Exception as e:
        if _is_transient(e):
            logger.error(
                "webhook_processing_unavailable",
                reference=event.reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _service_unavailable()
        raise

    if result.status == "unmatched":
        response.status_code = 202

    reason = result.reason
    if result.result is not None:
        reason = result.result.reason

    logger.info(
        "webhook_processed",
        reference=event.reference,
        status=result.status,
        subscription_id=result.subscription_id,
        reason=reason,
    )
    return WebhookAck(status=result.status, subscription_id=result.subscription_id, reason=reason)


@router.post(
    "/subscriptions",
    response_model=Subscription,
    status_code=201,
    summary="Create provisional subscription",
)
def create_subscription(request: CreateSubscriptionRequest) -> Subscription:
    """Open an incomplete subscription that awaits its first payment.

    Raises:
        404: Plan not found
        400: Subscription ID already in use
    """
    logger.info("create_subscription_request", user_id=request.user_id, plan_id=request.plan_id)
    try:
        return get_subscription_engine().create_subscription(
            user_id=request.user_id,
            plan_id=request.plan_id,
            customer_email=request.customer_email,
            subscription_id=request.subscription_id,
        )
    except PlanNotFoundError:
        logger.warning("plan_not_found", plan_id=request.plan_id)
        raise HTTPException(
            status_code=404,
            detail={"error": "Plan not found", "message": f"Plan '{request.plan_id}' does not exist"},
        )
    except ValueError as e:
        logger.error("invalid_subscription_request", error=str(e))
        raise HTTPException(status_code=400, detail={"error": "Invalid request", "message": str(e)})


@router.post(
    "/subscriptions/{subscription_id}/verify",
    response_model=SubscriptionStatusResponse,
    summary="Verify payment after checkout",
)
def verify_payment(subscription_id: str, request: VerifyPaymentRequest) -> SubscriptionStatusResponse:
    """Client poll: activate from a transaction the provider has confirmed."""
    logger.info("verify_payment_request", subscription_id=subscription_id, reference=request.reference)
    return _activate(subscription_id, request.to_payment_data(), TransitionSource.VERIFICATION)


@router.post(
    "/subscriptions/{subscription_id}/activate",
    response_model=SubscriptionStatusResponse,
    summary="Activate subscription manually",
)
def activate_manually(subscription_id: str, payment_data: PaymentData) -> SubscriptionStatusResponse:
    """Admin or reconciliation activation. ``reference`` may be omitted."""
    logger.info("manual_activation_request", subscription_id=subscription_id)
    return _activate(subscription_id, payment_data, TransitionSource.MANUAL)


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionStatusResponse,
    summary="Cancel subscription",
)
def cancel_subscription(
    subscription_id: str, request: Optional[CancelSubscriptionRequest] = None
) -> SubscriptionStatusResponse:
    request = request or CancelSubscriptionRequest()
    engine = get_subscription_engine()
    try:
        outcome = get_activation_service().retry.run(
            lambda: engine.cancel_subscription(
                subscription_id,
                TransitionSource.MANUAL,
                immediate=request.immediate,
                reason=request.reason,
            ),
            name="cancel_subscription",
        )
    except Exception as e:
        if _is_transient(e):
            raise _service_unavailable()
        raise

    if not isinstance(outcome, Ok):
        result = TransitionResult.from_failure(outcome)
        raise HTTPException(
            status_code=_PERMANENT_STATUS_CODES.get(result.reason, 409),
            detail={"error": result.reason, "message": "Subscription could not be cancelled"},
        )

    result = outcome.value
    return SubscriptionStatusResponse(
        success=True,
        subscription_id=subscription_id,
        status=result.subscription.status.value,
        reason=result.reason,
        message="Cancellation scheduled" if not request.immediate else "Subscription cancelled",
    )


@router.post(
    "/grace-periods/enforce",
    response_model=GraceEnforcementReport,
    summary="Run grace period enforcement",
)
def enforce_grace_periods(
    request: Optional[EnforceGracePeriodsRequest] = None,
) -> GraceEnforcementReport:
    """Scheduler hook: warn or cancel past_due subscriptions."""
    enforcer = GracePeriodEnforcer(retry_engine=get_activation_service().retry)
    overrides = request.model_dump(exclude_none=True) if request else {}
    config = enforcer.config.model_copy(update=overrides)

    logger.info("grace_period_enforcement_requested", overrides=overrides)
    return enforcer.enforce_grace_periods(config)


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=Subscription,
    summary="Get subscription",
)
def get_subscription(subscription_id: str) -> Subscription:
    try:
        return get_subscription_engine().get_subscription(subscription_id)
    except SubscriptionNotFoundError:
        raise HTTPException(
            status_code=404,
            detail={"error": "Subscription not found", "message": f"'{subscription_id}' does not exist"},
        )


@router.get(
    "/subscriptions/{subscription_id}/history",
    response_model=List[SubscriptionHistoryEntry],
    summary="Get subscription audit trail",
)
def get_subscription_history(subscription_id: str) -> List[SubscriptionHistoryEntry]:
    """Subscription history, oldest first."""
    engine = get_subscription_engine()
    if not engine.subscriptions.exists(subscription_id):
        raise HTTPException(
            status_code=404,
            detail={"error": "Subscription not found", "message": f"'{subscription_id}' does not exist"},
        )
    return engine.get_history(subscription_id)
