"""Subscription lifecycle state machine.

Responsibilities:
- Apply lifecycle transitions (activate, recover, fail, cancel, expire, mark unpaid)
- Run every transition under the subscription's activation lock
- Re-read the subscription inside the lock before deciding anything
- Commit the subscription, payment and history writes of a transition atomically
- Publish billing notifications once a transition has committed

Every transition returns an outcome value (``Ok``, ``RetryableError`` or
``PermanentError``). The retry engine and the HTTP layer decide what to do
with it.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from billing_engine.config import Config, get_config
from billing_engine.logging_config import get_logger
from billing_engine.models import (
    ACTIVATABLE_STATUSES,
    FailureKind,
    HistoryAction,
    Ok,
    Outcome,
    Payment,
    PaymentData,
    PaymentStatus,
    PermanentError,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    TransitionResult,
    TransitionSource,
)
from billing_engine.repositories.plan_repository import PlanRepository, get_plan_repository
from billing_engine.repositories.transaction import TransactionManager, get_transaction_manager
from billing_engine.services.clock import Clock, get_clock
from billing_engine.services.lock_provider import SubscriptionLock
from billing_engine.services.notifications import BillingEventType
from billing_engine.utils.billing_period import add_billing_period, billing_period_to_timedelta
from billing_engine.utils.id_generator import (
    generate_history_id,
    generate_manual_reference,
    generate_payment_id,
    generate_subscription_id,
)

logger = get_logger(__name__)

SourceLike = Union[TransitionSource, str]


def _not_found(subscription_id: str) -> PermanentError:
    return PermanentError(
        kind=FailureKind.SUBSCRIPTION_NOT_FOUND,
        detail=f"Subscription {subscription_id} does not exist",
    )


def _invalid_status(subscription: Subscription, detail: Optional[str] = None) -> PermanentError:
    return PermanentError(
        kind=FailureKind.INVALID_STATUS,
        detail=detail or f"Subscription {subscription.id} is {subscription.status.value}",
    )


class SubscriptionEngine:
    """Subscription lifecycle management engine.

    Args:
        transaction_manager: Stores and atomic commits (defaults to global stores)
        plan_repository: Plan definitions (defaults to global repository)
        lock: Per-subscription lock runner (defaults to configured provider)
        clock: Time source (defaults to the global clock)
        notifier: Notification dispatcher (lazy-loaded global instance)
        config: Configuration (defaults to global config)
    """

    def __init__(
        self,
        transaction_manager: Optional[TransactionManager] = None,
        plan_repository: Optional[PlanRepository] = None,
        lock: Optional[SubscriptionLock] = None,
        clock: Optional[Clock] = None,
        notifier=None,
        config: Optional[Config] = None,
    ):
        self.transactions = transaction_manager or get_transaction_manager()
        self.subscriptions = self.transactions.subscription_store
        self.payments = self.transactions.payment_store
        self.history = self.transactions.history_store
        self.plan_repo = plan_repository or get_plan_repository()
        self.config = config or get_config()
        self.lock = lock or SubscriptionLock()
        self._clock = clock
        self._notifier = notifier  # Lazy loaded

        logger.info("subscription_engine_initialized", lock_backend=self.lock.provider.backend)

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    def _get_notifier(self):
        """lazy load notification dispatcher"""
        if self._notifier is None:
            from billing_engine.services.notifications import get_notification_dispatcher

            self._notifier = get_notification_dispatcher()
        return self._notifier

    def _notify(self, outcome: Outcome, event_type: BillingEventType, **data) -> None:
        """Publish an event for a committed transition. Never raises."""
        if not isinstance(outcome, Ok):
            return
        result: TransitionResult = outcome.value
        if not result.success or result.reason is not None or result.subscription is None:
            return
        try:
            self._get_notifier().publish(event_type, result.subscription, **data)
        except Exception as e:
            logger.error(
                "notification_dispatch_failed",
                event_type=event_type.value,
                subscription_id=result.subscription.id,
                error=str(e),
                exc_info=True,
            )

    def _locked(
        self,
        subscription_id: str,
        fn: Callable[[], Outcome],
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        timeout = (
            lock_timeout
            if lock_timeout is not None
            else self.config.lock_settings.acquire_timeout_seconds
        )
        return self.lock.run(subscription_id, timeout, fn)

    def _history_entry(
        self,
        subscription: Subscription,
        before: dict,
        action: HistoryAction,
        reason: str,
        source: TransitionSource,
        now: datetime,
        **extra,
    ) -> SubscriptionHistoryEntry:
        return SubscriptionHistoryEntry(
            id=generate_history_id(),
            subscription_id=subscription.id,
            action=action,
            old_value=before,
            new_value={**subscription.snapshot(), **extra},
            reason=reason,
            source=source,
            created_at=now,
        )

    def _grace_period_length(self, plan_id: str) -> timedelta:
        plan = self.plan_repo.find_by_id(plan_id)
        if plan is not None and plan.grace_period:
            return billing_period_to_timedelta(plan.grace_period)
        return timedelta(days=self.config.grace_period_config.grace_period_days)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription:
        """Get a subscription by id.

        Raises:
            SubscriptionNotFoundError: If not found
        """
        return self.subscriptions.get(subscription_id)

    def get_history(self, subscription_id: str) -> List[SubscriptionHistoryEntry]:
        return self.history.get_by_subscription(subscription_id)

    def get_payments(self, subscription_id: str) -> List[Payment]:
        return self.payments.get_by_subscription(subscription_id)

    def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        customer_email: Optional[str] = None,
        subscription_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
    ) -> Subscription:
        """Create a provisional (incomplete) subscription awaiting its first payment.

        Raises:
            PlanNotFoundError: If plan_id is unknown
            ValueError: If subscription_id already exists
        """
        plan = self.plan_repo.get_by_id(plan_id)
        now = self.clock.now()
        subscription = Subscription(
            id=subscription_id or generate_subscription_id(),
            user_id=user_id,
            customer_email=customer_email,
            plan_id=plan.id,
            status=SubscriptionStatus.INCOMPLETE,
            provider_subscription_id=provider_subscription_id,
            created_at=now,
            updated_at=now,
        )
        self.subscriptions.add(subscription)
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            user_id=user_id,
            plan_id=plan.id,
        )
        return subscription

    # ------------------------------------------------------------------
    # Successful payment: activation and recovery
    # ------------------------------------------------------------------

    def activate(
        self,
        subscription_id: str,
        payment_data: PaymentData,
        source: SourceLike,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Move an incomplete or past_due subscription to active.

        Single attempt, no retry or idempotency; see
        ``billing_engine.services.activation.activate_subscription``.

        Returns:
            Ok(TransitionResult) on a committed activation,
            PermanentError(already_active | subscription_not_found | invalid_status),
            or RetryableError(lock_timeout)
        """
        source = TransitionSource(source)
        outcome = self._locked(
            subscription_id,
            lambda: self._apply_successful_payment(
                subscription_id,
                payment_data,
                source,
                allowed=ACTIVATABLE_STATUSES,
                action=HistoryAction.ACTIVATED,
                reason=f"Subscription activated from {source.value}",
            ),
            lock_timeout,
        )
        self._notify(outcome, BillingEventType.SUBSCRIPTION_ACTIVATED, source=source.value)
        return outcome

    def recover_subscription(
        self,
        subscription_id: str,
        payment_data: PaymentData,
        source: SourceLike,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Move a past_due subscription back to active within its grace window."""
        source = TransitionSource(source)
        outcome = self._locked(
            subscription_id,
            lambda: self._apply_successful_payment(
                subscription_id,
                payment_data,
                source,
                allowed=frozenset({SubscriptionStatus.PAST_DUE}),
                action=HistoryAction.RECOVERED,
                reason=f"Subscription recovered from {source.value}",
                require_grace_window=True,
            ),
            lock_timeout,
        )
        self._notify(outcome, BillingEventType.SUBSCRIPTION_RECOVERED, source=source.value)
        return outcome

    def _apply_successful_payment(
        self,
        subscription_id: str,
        payment_data: PaymentData,
        source: TransitionSource,
        allowed: frozenset,
        action: HistoryAction,
        reason: str,
        require_grace_window: bool = False,
    ) -> Outcome:
        # Re-read under the lock: a previous holder may have committed already
        subscription = self.subscriptions.find(subscription_id)
        if subscription is None:
            return _not_found(subscription_id)
        if subscription.status == SubscriptionStatus.ACTIVE:
            logger.info(
                "subscription_already_active",
                subscription_id=subscription_id,
                source=source.value,
            )
            return PermanentError(kind=FailureKind.ALREADY_ACTIVE)
        if subscription.status not in allowed:
            return _invalid_status(subscription)

        now = self.clock.now()
        if (
            require_grace_window
            and subscription.grace_period_end is not None
            and now > subscription.grace_period_end
        ):
            return _invalid_status(subscription, "Grace period has already ended")

        reference = payment_data.reference or generate_manual_reference(subscription.id, now)
        existing = self.payments.find_by_reference(reference)
        if existing is not None and existing.subscription_id not in (None, subscription.id):
            return _invalid_status(
                subscription,
                f"Payment {reference} is linked to another subscription",
            )

        plan = self.plan_repo.get_by_id(subscription.plan_id)
        payment = self._succeeded_payment(existing, subscription, payment_data, reference, now, source)

        before = subscription.snapshot()
        subscription.set_status(SubscriptionStatus.ACTIVE, reason=reason)
        period_end = add_billing_period(now, plan.billing_period)
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        subscription.next_billing_date = period_end
        subscription.cancel_at_period_end = False
        subscription.retry_count = 0
        subscription.grace_period_end = None
        subscription.last_payment_attempt = now
        subscription.updated_at = now

        entry = self._history_entry(
            subscription, before, action, reason, source, now, payment_reference=reference
        )
        with self.transactions.atomic() as tx:
            tx.save_subscription(subscription)
            tx.save_payment(payment)
            tx.append_history(entry)

        logger.info(
            "subscription_payment_applied",
            subscription_id=subscription.id,
            action=action.value,
            source=source.value,
            payment_id=payment.id,
            period_end=period_end.isoformat(),
        )
        return Ok(value=TransitionResult(success=True, subscription=subscription, payment=payment))

    def _succeeded_payment(
        self,
        existing: Optional[Payment],
        subscription: Subscription,
        payment_data: PaymentData,
        reference: str,
        now: datetime,
        source: TransitionSource,
    ) -> Payment:
        """Promote an existing row for the reference, or build a new succeeded one."""
        authorization_code = (
            payment_data.authorization.authorization_code if payment_data.authorization else None
        )
        if existing is not None:
            payment = existing
            payment.subscription_id = subscription.id
            payment.user_id = subscription.user_id
            payment.amount = payment_data.amount
            payment.currency = payment_data.currency.upper()
            payment.provider_payment_id = payment_data.payment_id
            payment.authorization_code = authorization_code or payment.authorization_code
            payment.updated_at = now
            payment.set_status(PaymentStatus.SUCCEEDED, reason=f"Payment confirmed from {source.value}")
            return payment

        plan = self.plan_repo.find_by_id(subscription.plan_id)
        return Payment(
            id=generate_payment_id(),
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=payment_data.amount,
            currency=payment_data.currency.upper(),
            status=PaymentStatus.SUCCEEDED,
            provider_reference=reference,
            provider_payment_id=payment_data.payment_id,
            authorization_code=authorization_code,
            description=f"{plan.name if plan else subscription.plan_id} subscription payment",
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Failed renewal and grace periods
    # ------------------------------------------------------------------

    def record_payment_failure(
        self,
        subscription_id: str,
        source: SourceLike = TransitionSource.WEBHOOK,
        payment_data: Optional[PaymentData] = None,
        reason: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Record a failed renewal payment.

        active -> past_due with a fresh grace period; a further failure while
        past_due only bumps ``retry_count``.
        """
        source = TransitionSource(source)

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
                return _invalid_status(subscription)

            now = self.clock.now()
            text = reason or f"Payment failed, reported from {source.value}"
            before = subscription.snapshot()
            if subscription.status == SubscriptionStatus.ACTIVE:
                subscription.set_status(SubscriptionStatus.PAST_DUE, reason=text)
                subscription.grace_period_end = now + self._grace_period_length(subscription.plan_id)
            subscription.retry_count += 1
            subscription.last_payment_attempt = now
            subscription.updated_at = now

            payment = self._failed_payment(subscription, payment_data, now) if payment_data else None
            entry = self._history_entry(
                subscription, before, HistoryAction.PAYMENT_FAILED, text, source, now
            )
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                if payment is not None:
                    tx.save_payment(payment)
                tx.append_history(entry)

            logger.info(
                "subscription_payment_failed",
                subscription_id=subscription.id,
                retry_count=subscription.retry_count,
                grace_period_end=subscription.grace_period_end.isoformat()
                if subscription.grace_period_end
                else None,
            )
            return Ok(value=TransitionResult(success=True, subscription=subscription, payment=payment))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        self._notify(outcome, BillingEventType.PAYMENT_FAILED, source=source.value)
        return outcome

    def _failed_payment(
        self,
        subscription: Subscription,
        payment_data: PaymentData,
        now: datetime,
    ) -> Optional[Payment]:
        reference = payment_data.reference or generate_manual_reference(subscription.id, now)
        existing = self.payments.find_by_reference(reference)
        if existing is not None:
            if existing.status == PaymentStatus.SUCCEEDED or existing.subscription_id not in (
                None,
                subscription.id,
            ):
                return None
            existing.subscription_id = subscription.id
            existing.updated_at = now
            existing.set_status(PaymentStatus.FAILED, reason="Renewal charge failed")
            return existing
        return Payment(
            id=generate_payment_id(),
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=payment_data.amount,
            currency=payment_data.currency.upper(),
            status=PaymentStatus.FAILED,
            provider_reference=reference,
            provider_payment_id=payment_data.payment_id,
            description="Failed renewal charge",
            created_at=now,
            updated_at=now,
        )

    def set_grace_period(
        self,
        subscription_id: str,
        days: Optional[int] = None,
        source: SourceLike = TransitionSource.MANUAL,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Put an active or past_due subscription into a fresh grace period."""
        source = TransitionSource(source)
        length = (
            timedelta(days=days)
            if days is not None
            else timedelta(days=self.config.grace_period_config.grace_period_days)
        )

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
                return _invalid_status(subscription)

            now = self.clock.now()
            text = f"Grace period of {length.days} days started from {source.value}"
            before = subscription.snapshot()
            subscription.set_status(SubscriptionStatus.PAST_DUE, reason=text)
            subscription.grace_period_end = now + length
            subscription.updated_at = now

            entry = self._history_entry(
                subscription, before, HistoryAction.GRACE_PERIOD_STARTED, text, source, now
            )
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                tx.append_history(entry)
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        return self._locked(subscription_id, transition, lock_timeout)

    def warning_already_recorded(self, subscription: Subscription, threshold_days: int) -> bool:
        """Whether a warning for this threshold exists for the current grace period."""
        grace_end = subscription.snapshot().get("grace_period_end")
        return any(
            entry.new_value.get("warning_threshold_days") == threshold_days
            and entry.new_value.get("grace_period_end") == grace_end
            for entry in self.history.get_by_action(
                subscription.id, HistoryAction.GRACE_PERIOD_WARNING
            )
        )

    def record_grace_warning(
        self,
        subscription_id: str,
        threshold_days: int,
        days_remaining: int,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Record that the warning for ``threshold_days`` was sent.

        Returns ``Ok`` with ``reason="warning_already_recorded"`` when a
        previous run already handled this threshold.
        """
        source = TransitionSource.SCHEDULER

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            if subscription.status != SubscriptionStatus.PAST_DUE:
                return _invalid_status(subscription)
            if self.warning_already_recorded(subscription, threshold_days):
                return Ok(
                    value=TransitionResult(
                        success=True,
                        reason="warning_already_recorded",
                        subscription=subscription,
                    )
                )

            now = self.clock.now()
            text = (
                f"Grace period warning sent from {source.value}: "
                f"{days_remaining} day(s) remaining"
            )
            entry = self._history_entry(
                subscription,
                subscription.snapshot(),
                HistoryAction.GRACE_PERIOD_WARNING,
                text,
                source,
                now,
                warning_threshold_days=threshold_days,
                days_remaining=days_remaining,
            )
            with self.transactions.atomic() as tx:
                tx.append_history(entry)
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        self._notify(
            outcome,
            BillingEventType.GRACE_PERIOD_WARNING,
            days_remaining=days_remaining,
            warning_threshold_days=threshold_days,
        )
        return outcome

    # ------------------------------------------------------------------
    # Cancellation and terminal states
    # ------------------------------------------------------------------

    def cancel_subscription(
        self,
        subscription_id: str,
        source: SourceLike = TransitionSource.MANUAL,
        immediate: bool = True,
        reason: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Cancel a subscription.

        With ``immediate=True`` an active or past_due subscription moves to
        canceled. Otherwise an active subscription is flagged with
        ``cancel_at_period_end`` and keeps its status until the period ends.
        """
        source = TransitionSource(source)

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)

            now = self.clock.now()
            before = subscription.snapshot()

            if immediate:
                if subscription.status not in (
                    SubscriptionStatus.ACTIVE,
                    SubscriptionStatus.PAST_DUE,
                ):
                    return _invalid_status(subscription)
                text = reason or f"Subscription cancelled from {source.value}"
                self._apply_cancel(subscription, text, now)
                action = HistoryAction.CANCELLED
            else:
                if subscription.status != SubscriptionStatus.ACTIVE:
                    return _invalid_status(subscription)
                if subscription.cancel_at_period_end:
                    return Ok(
                        value=TransitionResult(
                            success=True, reason="already_scheduled", subscription=subscription
                        )
                    )
                text = reason or f"Cancellation at period end scheduled from {source.value}"
                subscription.cancel_at_period_end = True
                subscription.updated_at = now
                action = HistoryAction.CANCEL_SCHEDULED

            entry = self._history_entry(subscription, before, action, text, source, now)
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                tx.append_history(entry)

            logger.info(
                "subscription_canceled",
                subscription_id=subscription.id,
                immediate=immediate,
                source=source.value,
            )
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        if immediate:
            self._notify(outcome, BillingEventType.SUBSCRIPTION_CANCELLED, source=source.value)
        return outcome

    def cancel_after_grace_period(
        self,
        subscription_id: str,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Cancel a past_due subscription whose grace period has ended.

        The status and grace period end are re-checked under the lock, so a
        subscription recovered in the meantime is left alone.
        """
        source = TransitionSource.SCHEDULER

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            now = self.clock.now()
            if (
                subscription.status != SubscriptionStatus.PAST_DUE
                or subscription.grace_period_end is None
                or subscription.grace_period_end > now
            ):
                return _invalid_status(subscription, "Grace period has not ended")

            text = f"Grace period expired, cancelled from {source.value}"
            before = subscription.snapshot()
            self._apply_cancel(subscription, text, now)
            entry = self._history_entry(
                subscription, before, HistoryAction.CANCELLED, text, source, now
            )
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                tx.append_history(entry)
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        self._notify(
            outcome,
            BillingEventType.SUBSCRIPTION_CANCELLED,
            source=source.value,
            reason="grace_period_expired",
        )
        return outcome

    def _apply_cancel(self, subscription: Subscription, reason: str, now: datetime) -> None:
        subscription.set_status(SubscriptionStatus.CANCELED, reason=reason)
        subscription.canceled_at = now
        subscription.cancel_at_period_end = False
        subscription.grace_period_end = None
        subscription.next_billing_date = None
        subscription.updated_at = now

    def process_period_end(
        self,
        subscription_id: str,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Cancel an active subscription whose scheduled cancellation is due."""
        source = TransitionSource.SCHEDULER

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            now = self.clock.now()
            if (
                subscription.status != SubscriptionStatus.ACTIVE
                or not subscription.cancel_at_period_end
                or subscription.current_period_end is None
                or subscription.current_period_end > now
            ):
                return _invalid_status(subscription, "Subscription is not due for period-end cancellation")

            text = f"Subscription cancelled at period end from {source.value}"
            before = subscription.snapshot()
            self._apply_cancel(subscription, text, now)
            entry = self._history_entry(
                subscription, before, HistoryAction.CANCELLED, text, source, now
            )
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                tx.append_history(entry)
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        self._notify(outcome, BillingEventType.SUBSCRIPTION_CANCELLED, source=source.value)
        return outcome

    def expire_incomplete(
        self,
        subscription_id: str,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Expire an incomplete subscription whose first payment never arrived."""
        source = TransitionSource.SCHEDULER
        window = timedelta(hours=self.config.settings.incomplete_expiry_hours)

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            now = self.clock.now()
            if subscription.status != SubscriptionStatus.INCOMPLETE:
                return _invalid_status(subscription)
            if subscription.created_at + window > now:
                return _invalid_status(subscription, "Payment window has not elapsed")

            text = f"No payment within {int(window.total_seconds() // 3600)} hours, expired from {source.value}"
            before = subscription.snapshot()
            subscription.set_status(SubscriptionStatus.INCOMPLETE_EXPIRED, reason=text)
            subscription.updated_at = now
            entry = self._history_entry(
                subscription, before, HistoryAction.EXPIRED, text, source, now
            )
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                tx.append_history(entry)
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        self._notify(outcome, BillingEventType.SUBSCRIPTION_EXPIRED, source=source.value)
        return outcome

    def mark_unpaid(
        self,
        subscription_id: str,
        source: SourceLike = TransitionSource.MANUAL,
        reason: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ) -> Outcome:
        """Move any non-terminal subscription to unpaid."""
        source = TransitionSource(source)

        def transition() -> Outcome:
            subscription = self.subscriptions.find(subscription_id)
            if subscription is None:
                return _not_found(subscription_id)
            if subscription.is_terminal:
                return _invalid_status(subscription)

            now = self.clock.now()
            text = reason or f"Marked unpaid from {source.value}"
            before = subscription.snapshot()
            subscription.set_status(SubscriptionStatus.UNPAID, reason=text)
            subscription.grace_period_end = None
            subscription.next_billing_date = None
            subscription.updated_at = now
            entry = self._history_entry(
                subscription, before, HistoryAction.MARKED_UNPAID, text, source, now
            )
            with self.transactions.atomic() as tx:
                tx.save_subscription(subscription)
                tx.append_history(entry)
            return Ok(value=TransitionResult(success=True, subscription=subscription))

        outcome = self._locked(subscription_id, transition, lock_timeout)
        self._notify(outcome, BillingEventType.SUBSCRIPTION_UNPAID, source=source.value)
        return outcome

    # ------------------------------------------------------------------
    # Scheduled sweeps
    # ------------------------------------------------------------------

    def process_due_period_ends(self) -> List[str]:
        """Cancel every subscription whose scheduled cancellation is due.

        Returns:
            Ids of subscriptions cancelled by this run
        """
        cancelled = []
        for subscription in self.subscriptions.get_period_ended_pending_cancel(self.clock.now()):
            outcome = self.process_period_end(subscription.id)
            if isinstance(outcome, Ok):
                cancelled.append(subscription.id)
            else:
                logger.warning(
                    "period_end_cancel_skipped",
                    subscription_id=subscription.id,
                    outcome=outcome.kind.value,
                )
        return cancelled

    def expire_stale_incomplete(self) -> List[str]:
        """Expire incomplete subscriptions older than ``incomplete_expiry_hours``.

        Returns:
            Ids of subscriptions expired by this run
        """
        cutoff = self.clock.now() - timedelta(hours=self.config.settings.incomplete_expiry_hours)
        expired = []
        for subscription in self.subscriptions.get_incomplete_created_before(cutoff):
            outcome = self.expire_incomplete(subscription.id)
            if isinstance(outcome, Ok):
                expired.append(subscription.id)
            else:
                logger.warning(
                    "incomplete_expiry_skipped",
                    subscription_id=subscription.id,
                    outcome=outcome.kind.value,
                )
        return expired


# Global engine instance
_engine_instance: Optional[SubscriptionEngine] = None


def get_subscription_engine() -> SubscriptionEngine:
    """Get global subscription engine instance (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = SubscriptionEngine()
    return _engine_instance


def reset_subscription_engine() -> None:
    global _engine_instance
    _engine_instance = None
