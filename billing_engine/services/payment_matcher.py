"""Payment matcher - resolves a payment event to the subscription it pays for.

Resolution order, highest confidence first:

1. ``metadata.subscription_id`` on the event (confidence 100). Amount or
   currency disagreements only add warnings.
2. A stored payment with the same provider reference that is already linked
   to a subscription (confidence 95).
3. Heuristic search over the customer's incomplete/past_due subscriptions
   with the same currency, an amount within ``amount_tolerance_ratio`` of the
   plan price (no absolute floor) and a creation time inside the lookback
   window. Candidates are scored on amount exactness and recency.

A ``None`` result means nobody should be activated automatically; the event
goes to manual reconciliation.
"""

from datetime import timedelta
from typing import List, Optional

from billing_engine.config import get_config
from billing_engine.logging_config import get_logger
from billing_engine.models import (
    ACTIVATABLE_STATUSES,
    AmountValidationResult,
    MatcherSettings,
    MatchValidation,
    PaymentEvent,
    PaymentStatus,
    PlanDefinition,
    Subscription,
    SubscriptionMatch,
)
from billing_engine.repositories.payment_store import PaymentStore, get_payment_store
from billing_engine.repositories.plan_repository import PlanRepository, get_plan_repository
from billing_engine.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from billing_engine.services.clock import Clock, get_clock

logger = get_logger(__name__)

EXPLICIT_ID_CONFIDENCE = 100
REFERENCE_CONFIDENCE = 95

EXPLICIT_ID_PRIORITY = 3
REFERENCE_PRIORITY = 2
HEURISTIC_PRIORITY = 1

# Heuristic scoring
BASE_SCORE = 60
EXACT_AMOUNT_BONUS = 20
TOLERATED_AMOUNT_BONUS = 10
CREATED_WITHIN_1H_BONUS = 15
CREATED_WITHIN_24H_BONUS = 10
OLDER_CANDIDATE_BONUS = 5

HIGH_CONFIDENCE = 80
HIGH_CONFIDENCE_AMOUNT_TOLERANCE = 0.05
OVERPAYMENT_REVIEW_RATIO = 0.10


def amount_tolerance(price: int, settings: MatcherSettings) -> float:
    """Tolerated difference between a paid amount and a plan price."""
    return max(price * settings.amount_tolerance_ratio, settings.amount_tolerance_absolute)


def heuristic_amount_tolerance(price: int, settings: MatcherSettings) -> float:
    """Tolerance for matches found without an explicit link: the ratio alone, no floor."""
    return price * settings.amount_tolerance_ratio


def validate_payment_amount(
    plan: PlanDefinition,
    amount: int,
    currency: str,
    settings: Optional[MatcherSettings] = None,
    allow_overpayment: bool = True,
    allow_underpayment: bool = False,
) -> AmountValidationResult:
    """Compare a paid amount against a plan price.

    Args:
        plan: Plan being paid for
        amount: Paid amount in minor units
        currency: Paid currency
        settings: Tolerance settings (defaults to ``matcher`` from billing.yaml)
        allow_overpayment: Accept amounts above the price (review above 10%)
        allow_underpayment: Accept amounts below the price (always review)

    Returns:
        AmountValidationResult with a suggested action: accept, review or reject
    """
    settings = settings or get_config().matcher_settings
    expected = plan.price
    discrepancy = amount - expected
    ratio = abs(discrepancy) / expected if expected else (0.0 if amount == 0 else 1.0)
    tolerance = amount_tolerance(expected, settings)

    def result(is_valid: bool, action: str, reason: Optional[str] = None) -> AmountValidationResult:
        return AmountValidationResult(
            is_valid=is_valid,
            expected_amount=expected,
            actual_amount=amount,
            discrepancy=discrepancy,
            discrepancy_ratio=ratio,
            tolerance=tolerance,
            reason=reason,
            suggested_action=action,
        )

    if currency.upper() != plan.currency:
        return result(False, "reject", f"Currency mismatch: expected {plan.currency}, got {currency.upper()}")

    if abs(discrepancy) <= tolerance:
        return result(True, "accept")

    if discrepancy > 0:
        if not allow_overpayment:
            return result(False, "reject", f"Overpayment not allowed: {discrepancy} excess")
        action = "review" if ratio > OVERPAYMENT_REVIEW_RATIO else "accept"
        return result(True, action, f"Overpayment of {discrepancy} ({ratio:.2%})")

    if allow_underpayment:
        return result(True, "review", f"Underpayment of {-discrepancy} ({ratio:.2%})")
    return result(False, "reject", f"Underpayment of {-discrepancy} ({ratio:.2%}) not allowed")


class PaymentMatcher:
    """Finds the subscription a payment event belongs to.

    Args:
        subscription_store: Subscription storage (defaults to global instance)
        payment_store: Payment storage (defaults to global instance)
        plan_repository: Plan definitions (defaults to global instance)
        settings: Matcher thresholds (defaults to billing.yaml)
        clock: Time source for the lookback window
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        payment_store: Optional[PaymentStore] = None,
        plan_repository: Optional[PlanRepository] = None,
        settings: Optional[MatcherSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.subscriptions = subscription_store or get_subscription_store()
        self.payments = payment_store or get_payment_store()
        self.plan_repo = plan_repository or get_plan_repository()
        self.settings = settings or get_config().matcher_settings
        self._clock = clock

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    def match_payment(self, event: PaymentEvent) -> Optional[SubscriptionMatch]:
        """Resolve a payment event to a subscription.

        Returns:
            SubscriptionMatch, or None when nothing clears the confidence
            threshold or several candidates do
        """
        match = (
            self._match_explicit_id(event)
            or self._match_reference(event)
            or self._match_customer(event)
        )
        if match is None:
            logger.warning(
                "payment_unmatched",
                reference=event.reference,
                amount=event.amount,
                currency=event.currency,
                customer_email=event.customer_email,
            )
            return None

        logger.info(
            "payment_matched",
            reference=event.reference,
            subscription_id=match.subscription_id,
            confidence=match.confidence,
            match_reasons=match.match_reasons,
            warnings=match.warnings,
        )
        return match

    def _match_explicit_id(self, event: PaymentEvent) -> Optional[SubscriptionMatch]:
        subscription_id = event.explicit_subscription_id
        if not subscription_id:
            return None

        subscription = self.subscriptions.find(subscription_id)
        if subscription is None:
            logger.warning(
                "payment_metadata_subscription_missing",
                reference=event.reference,
                subscription_id=subscription_id,
            )
            return None

        warnings = []
        plan = self.plan_repo.find_by_id(subscription.plan_id)
        if plan is None:
            warnings.append(f"Plan {subscription.plan_id} is not configured")
        else:
            amount_check = validate_payment_amount(plan, event.amount, event.currency, self.settings)
            if amount_check.suggested_action != "accept" or amount_check.reason:
                warnings.append(f"Amount check: {amount_check.reason}")

        return SubscriptionMatch(
            subscription_id=subscription.id,
            confidence=EXPLICIT_ID_CONFIDENCE,
            match_reasons=["metadata_subscription_id"],
            warnings=warnings,
            priority=EXPLICIT_ID_PRIORITY,
        )

    def _match_reference(self, event: PaymentEvent) -> Optional[SubscriptionMatch]:
        payment = self.payments.find_by_reference(event.reference)
        if payment is None or payment.subscription_id is None:
            return None
        if not self.subscriptions.exists(payment.subscription_id):
            return None
        return SubscriptionMatch(
            subscription_id=payment.subscription_id,
            confidence=REFERENCE_CONFIDENCE,
            match_reasons=["payment_reference_match"],
            priority=REFERENCE_PRIORITY,
        )

    def _match_customer(self, event: PaymentEvent) -> Optional[SubscriptionMatch]:
        if not event.customer_email:
            return None

        candidates = self.subscriptions.find_by_customer_email(
            event.customer_email, statuses=ACTIVATABLE_STATUSES
        )[: self.settings.max_candidates]

        scored = [m for m in (self._score(s, event) for s in candidates) if m is not None]
        qualified = [m for m in scored if m.confidence >= self.settings.min_confidence]

        if len(qualified) == 1:
            return qualified[0]
        if len(qualified) > 1:
            logger.warning(
                "payment_match_ambiguous",
                reference=event.reference,
                candidates=[m.subscription_id for m in qualified],
            )
        elif scored:
            logger.info(
                "payment_match_below_threshold",
                reference=event.reference,
                best_confidence=max(m.confidence for m in scored),
                min_confidence=self.settings.min_confidence,
            )
        return None

    def _score(self, subscription: Subscription, event: PaymentEvent) -> Optional[SubscriptionMatch]:
        plan = self.plan_repo.find_by_id(subscription.plan_id)
        if plan is None or plan.currency != event.currency.upper():
            return None

        now = self.clock.now()
        age = now - subscription.created_at
        if age > timedelta(hours=self.settings.lookback_hours) or age < timedelta(0):
            return None

        difference = abs(event.amount - plan.price)
        if difference > heuristic_amount_tolerance(plan.price, self.settings):
            return None

        reasons: List[str] = ["customer_email_match"]
        confidence = BASE_SCORE
        if difference == 0:
            confidence += EXACT_AMOUNT_BONUS
            reasons.append("amount_currency_exact_match")
        else:
            confidence += TOLERATED_AMOUNT_BONUS
            reasons.append("amount_within_tolerance")

        if age <= timedelta(hours=1):
            confidence += CREATED_WITHIN_1H_BONUS
            reasons.append("created_within_1h")
        elif age <= timedelta(hours=24):
            confidence += CREATED_WITHIN_24H_BONUS
            reasons.append("created_within_24h")
        else:
            confidence += OLDER_CANDIDATE_BONUS
            reasons.append(f"created_within_{self.settings.lookback_hours}h")

        return SubscriptionMatch(
            subscription_id=subscription.id,
            confidence=min(confidence, 100),
            match_reasons=reasons,
            priority=HEURISTIC_PRIORITY,
        )

    def validate_match(self, match: SubscriptionMatch, event: PaymentEvent) -> MatchValidation:
        """Check that a match is safe to activate.

        Rejects a missing subscription, a status a payment cannot activate,
        a reference already recorded as paid (or linked elsewhere), and an
        amount too far from the plan price: beyond ``amount_tolerance_ratio``
        for heuristic matches, beyond 5% for high-confidence linked matches.
        """
        subscription = self.subscriptions.find(match.subscription_id)
        if subscription is None:
            return MatchValidation(is_valid=False, reason="Subscription not found")

        if subscription.status not in ACTIVATABLE_STATUSES:
            return MatchValidation(
                is_valid=False,
                reason=f"Subscription status is {subscription.status.value}, not activatable",
            )

        existing = self.payments.find_by_reference(event.reference)
        if existing is not None and (
            existing.status == PaymentStatus.SUCCEEDED
            or existing.subscription_id not in (None, subscription.id)
        ):
            return MatchValidation(
                is_valid=False,
                reason="Payment already processed for this reference",
            )

        plan = self.plan_repo.find_by_id(subscription.plan_id)
        tolerance = self._validation_tolerance(match, plan)
        if tolerance is not None and abs(event.amount - plan.price) > tolerance:
            return MatchValidation(
                is_valid=False,
                reason=f"Amount validation failed: expected {plan.price}, got {event.amount}",
            )

        return MatchValidation(is_valid=True)

    def _validation_tolerance(
        self, match: SubscriptionMatch, plan: Optional[PlanDefinition]
    ) -> Optional[float]:
        # Matches without an explicit link are amount-checked at any confidence
        if plan is None:
            return None
        if match.priority < REFERENCE_PRIORITY:
            return heuristic_amount_tolerance(plan.price, self.settings)
        if match.confidence >= HIGH_CONFIDENCE:
            return plan.price * HIGH_CONFIDENCE_AMOUNT_TOLERANCE
        return None


_matcher_instance: Optional[PaymentMatcher] = None


def get_payment_matcher() -> PaymentMatcher:
    global _matcher_instance
    if _matcher_instance is None:
        _matcher_instance = PaymentMatcher()
    return _matcher_instance


def reset_payment_matcher() -> None:
    global _matcher_instance
    _matcher_instance = None


def match_payment(event: PaymentEvent) -> Optional[SubscriptionMatch]:
    """Resolve a payment event using the global matcher."""
    return get_payment_matcher().match_payment(event)
