"""Payment event processing - the webhook path into the billing engine.

Events arrive here only after their signature has been verified.

- ``charge.success``: resolve the subscription (explicit id, then matcher),
  validate the match and activate (or recover a past_due subscription).
  An unresolvable payment is stored as a pending, unlinked payment row for
  manual reconciliation and never activates anything.
- ``charge.failed`` / ``invoice.payment_failed``: record a failed renewal.
- Anything else is acknowledged and ignored.
"""

from typing import Optional

from billing_engine.errors import DuplicatePaymentReferenceError
from billing_engine.logging_config import bound_context, get_logger
from billing_engine.models import (
    EventProcessingResult,
    Ok,
    Payment,
    PaymentData,
    PaymentEvent,
    PaymentStatus,
    SubscriptionMatch,
    SubscriptionStatus,
    TransitionResult,
    TransitionSource,
)
from billing_engine.services.activation import ActivationService, get_activation_service
from billing_engine.services.payment_matcher import PaymentMatcher, get_payment_matcher
from billing_engine.services.retry import RetryEngine
from billing_engine.utils.id_generator import generate_payment_id

logger = get_logger(__name__)

SUCCESS_EVENTS = frozenset({"charge.success"})
FAILURE_EVENTS = frozenset({"charge.failed", "invoice.payment_failed"})


class PaymentEventProcessor:
    """Routes verified provider events to matching and state transitions.

    Args:
        activation: Activation service (defaults to global instance)
        matcher: Payment matcher (defaults to global instance)
        retry_engine: Retry policy for non-activation transitions
    """

    def __init__(
        self,
        activation: Optional[ActivationService] = None,
        matcher: Optional[PaymentMatcher] = None,
        retry_engine: Optional[RetryEngine] = None,
    ):
        self.activation = activation or get_activation_service()
        self.engine = self.activation.engine
        self.matcher = matcher or get_payment_matcher()
        self.retry = retry_engine or self.activation.retry

    def process_event(self, event: PaymentEvent) -> EventProcessingResult:
        """Handle one verified provider event.

        Raises:
            RetryExhaustedError: A transition stayed blocked for the whole retry budget
            ConnectionError, TimeoutError, TransientDatabaseError: Transient
                failure that outlived the retry budget
        """
        with bound_context(reference=event.reference, event_type=event.event_type):
            logger.info("payment_event_received", amount=event.amount, currency=event.currency)

            if event.event_type in SUCCESS_EVENTS:
                return self._process_success(event)
            if event.event_type in FAILURE_EVENTS:
                return self._process_failure(event)

            logger.info("payment_event_ignored")
            return EventProcessingResult(status="ignored", reason=f"Unhandled event {event.event_type}")

    def _process_success(self, event: PaymentEvent) -> EventProcessingResult:
        match = self.matcher.match_payment(event)
        if match is None:
            self._record_unmatched_payment(event)
            return EventProcessingResult(
                status="unmatched",
                reason="No subscription matched with sufficient confidence",
            )

        subscription = self.engine.subscriptions.find(match.subscription_id)
        payment_data = event.to_payment_data()

        # Replays of an event that already activated go straight to activation,
        # which answers already_active without writing anything.
        if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE:
            return self._activate_matched(match, payment_data)

        validation = self.matcher.validate_match(match, event)
        if not validation.is_valid:
            # Another trigger may have activated it since the first read
            current = self.engine.subscriptions.find(match.subscription_id)
            if current is not None and current.status == SubscriptionStatus.ACTIVE:
                return self._activate_matched(match, payment_data)

            logger.warning(
                "payment_match_rejected",
                subscription_id=match.subscription_id,
                confidence=match.confidence,
                reason=validation.reason,
            )
            return EventProcessingResult(
                status="rejected",
                subscription_id=match.subscription_id,
                match=match,
                reason=validation.reason,
            )

        if subscription.status == SubscriptionStatus.PAST_DUE:
            outcome = self.retry.run(
                lambda: self.engine.recover_subscription(
                    match.subscription_id, payment_data, TransitionSource.WEBHOOK
                ),
                name="recover_subscription",
            )
            result = outcome.value if isinstance(outcome, Ok) else TransitionResult.from_failure(outcome)
            return EventProcessingResult(
                status="processed",
                subscription_id=match.subscription_id,
                result=result,
                match=match,
            )

        return self._activate_matched(match, payment_data)

    def _activate_matched(
        self, match: SubscriptionMatch, payment_data: PaymentData
    ) -> EventProcessingResult:
        response = self.activation.activate_subscription(
            match.subscription_id, payment_data, TransitionSource.WEBHOOK
        )
        return EventProcessingResult(
            status="processed",
            subscription_id=match.subscription_id,
            result=response.result,
            match=match,
        )

    def _process_failure(self, event: PaymentEvent) -> EventProcessingResult:
        match = self.matcher.match_payment(event)
        if match is None:
            return EventProcessingResult(
                status="unmatched",
                reason="Failed payment could not be linked to a subscription",
            )

        outcome = self.retry.run(
            lambda: self.engine.record_payment_failure(
                match.subscription_id,
                TransitionSource.WEBHOOK,
                payment_data=event.to_payment_data(),
                reason=f"Provider reported {event.event_type}",
            ),
            name="record_payment_failure",
        )
        result = outcome.value if isinstance(outcome, Ok) else TransitionResult.from_failure(outcome)
        return EventProcessingResult(
            status="processed",
            subscription_id=match.subscription_id,
            result=result,
            match=match,
        )

    def _record_unmatched_payment(self, event: PaymentEvent) -> None:
        """Store a pending, unlinked payment row once per reference."""
        payments = self.engine.payments
        if payments.find_by_reference(event.reference) is not None:
            return

        now = self.engine.clock.now()
        payment = Payment(
            id=generate_payment_id(),
            amount=event.amount,
            currency=event.currency.upper(),
            status=PaymentStatus.PENDING,
            provider_reference=event.reference,
            provider_payment_id=event.provider_payment_id,
            authorization_code=event.authorization.authorization_code if event.authorization else None,
            description="Unmatched payment awaiting reconciliation",
            created_at=now,
            updated_at=now,
        )
        try:
            with self.engine.transactions.atomic() as tx:
                tx.save_payment(payment)
        except DuplicatePaymentReferenceError:
            logger.info("unmatched_payment_already_recorded")
            return
        logger.warning("unmatched_payment_recorded", payment_id=payment.id)


_processor_instance: Optional[PaymentEventProcessor] = None


def get_event_processor() -> PaymentEventProcessor:
    global _processor_instance
    if _processor_instance is None:
        _processor_instance = PaymentEventProcessor()
    return _processor_instance


def reset_event_processor() -> None:
    global _processor_instance
    _processor_instance = None
