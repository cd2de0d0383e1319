"""Subscription activation - the single entry point for every trigger.

Webhook handler, verification poll, admin action and test harnesses all call
``activate_subscription``. They differ only in how they obtain the payment
data and how they map the result to an HTTP status.

Layering, outermost first:

    retry engine -> idempotency store -> activation lock -> state machine

A redelivered call that hits the idempotency store reports
``already_active`` without taking the lock, as long as the subscription is
still active. N identical calls therefore yield one activation and N-1
``already_active`` results whether they were deduplicated by the cache or by
the re-check under the lock. A hit for a subscription that has since left
``active`` (cancelled, unpaid, past_due) reports ``invalid_status``: the
cached payment was already applied and is never replayed onto a later status.
"""

from typing import Any, Optional

from billing_engine.config import get_config
from billing_engine.logging_config import bound_context, get_logger
from billing_engine.models import (
    ActivationResponse,
    FailureKind,
    Ok,
    Outcome,
    PaymentData,
    PermanentError,
    Subscription,
    SubscriptionStatus,
    TransitionResult,
    TransitionSource,
)
from billing_engine.services.idempotency import IdempotencyStore, get_idempotency_store
from billing_engine.services.retry import RetryEngine
from billing_engine.services.subscription_engine import (
    SourceLike,
    SubscriptionEngine,
    get_subscription_engine,
)

logger = get_logger(__name__)

OPERATION_NAME = "activate_subscription"


def activation_key(
    subscription_id: str,
    payment_data: PaymentData,
    store: IdempotencyStore,
) -> str:
    """Idempotency key of an activation: subscription plus payment identity."""
    return store.key_for(
        OPERATION_NAME,
        {
            "subscription_id": subscription_id,
            "reference": payment_data.reference,
            "payment_id": payment_data.payment_id,
        },
    )


def _is_fresh_activation(outcome: Any) -> bool:
    return isinstance(outcome, Ok) and outcome.value.success and outcome.value.reason is None


def _cached_form(outcome: Ok) -> dict:
    return outcome.value.model_dump(mode="json")


def _stale_replay(subscription_id: str, current: Optional[Subscription]) -> PermanentError:
    if current is None:
        return PermanentError(
            kind=FailureKind.SUBSCRIPTION_NOT_FOUND,
            detail=f"Subscription {subscription_id} does not exist",
        )
    return PermanentError(
        kind=FailureKind.INVALID_STATUS,
        detail=f"Payment already applied; subscription {subscription_id} is now {current.status.value}",
    )


class ActivationService:
    """Wires retry, idempotency and locking around the state machine.

    Args:
        engine: Subscription state machine (defaults to global instance)
        idempotency_store: Result cache (defaults to configured store)
        retry_engine: Retry policy (defaults to ``retry`` from billing.yaml)
    """

    def __init__(
        self,
        engine: Optional[SubscriptionEngine] = None,
        idempotency_store: Optional[IdempotencyStore] = None,
        retry_engine: Optional[RetryEngine] = None,
    ):
        self.engine = engine or get_subscription_engine()
        self.idempotency = idempotency_store or get_idempotency_store()
        self.retry = retry_engine or RetryEngine()
        self.ttl_seconds = get_config().idempotency_settings.ttl_seconds

    def activate_subscription(
        self,
        subscription_id: str,
        payment_data: PaymentData,
        source: SourceLike,
        lock_timeout: Optional[float] = None,
    ) -> ActivationResponse:
        """Activate a subscription exactly once.

        Args:
            subscription_id: Subscription to activate
            payment_data: Payment that pays for it
            source: Trigger (webhook, verification, manual)
            lock_timeout: Lock wait override in seconds

        Returns:
            ActivationResponse. ``result.success`` is True for the committing
            call and for ``already_active`` replays; permanent failures come
            back with ``success=False`` and the failure kind as ``reason``.

        Raises:
            RetryExhaustedError: Lock stayed busy for the whole retry budget
            ConnectionError, TimeoutError, TransientDatabaseError: Transient
                infrastructure failure that outlived the retry budget
        """
        source = TransitionSource(source)
        key = activation_key(subscription_id, payment_data, self.idempotency)
        cache_state = {"from_cache": False}

        def activate() -> Outcome:
            return self.engine.activate(subscription_id, payment_data, source, lock_timeout)

        def attempt() -> Outcome:
            cache_state["from_cache"] = False
            idem = self.idempotency.with_idempotency(
                key,
                activate,
                ttl_seconds=self.ttl_seconds,
                cache_if=_is_fresh_activation,
                cache_as=_cached_form,
            )
            if not idem.from_cache:
                return idem.result

            current = self.engine.subscriptions.find(subscription_id)
            if current is None or current.status != SubscriptionStatus.ACTIVE:
                # The cached payment is spent; never re-apply it to a later status
                logger.info(
                    "activation_cache_stale",
                    status=current.status.value if current else None,
                )
                return _stale_replay(subscription_id, current)

            cache_state["from_cache"] = True
            return Ok(
                value=TransitionResult(success=True, reason="already_active", subscription=current)
            )

        with bound_context(subscription_id=subscription_id, source=source.value):
            logger.info("activation_started", reference=payment_data.reference)
            outcome = self.retry.run(attempt, name=OPERATION_NAME)

            if isinstance(outcome, Ok):
                result = outcome.value
            else:
                result = TransitionResult.from_failure(outcome)

            logger.info(
                "activation_finished",
                success=result.success,
                reason=result.reason,
                from_cache=cache_state["from_cache"],
            )

        return ActivationResponse(
            result=result,
            is_new=not cache_state["from_cache"],
            from_cache=cache_state["from_cache"],
        )


_service_instance: Optional[ActivationService] = None


def get_activation_service() -> ActivationService:
    global _service_instance
    if _service_instance is None:
        _service_instance = ActivationService()
    return _service_instance


def reset_activation_service() -> None:
    global _service_instance
    _service_instance = None


def activate_subscription(
    subscription_id: str,
    payment_data: PaymentData,
    source: SourceLike,
    lock_timeout: Optional[float] = None,
) -> ActivationResponse:
    """Activate a subscription through the global activation service."""
    return get_activation_service().activate_subscription(
        subscription_id, payment_data, source, lock_timeout
    )
