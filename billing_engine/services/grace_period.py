"""Grace period enforcement.

Periodic sweep over past_due subscriptions with a grace period end:

- expired and auto-cancel enabled: cancel through the lock-protected path
- otherwise, once the days remaining drop to a warning threshold: send one
  warning per threshold and record it in the subscription history

Subscriptions are processed concurrently with a bounded thread pool; each
transition still takes the subscription's activation lock.
"""

import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import List, Optional

from billing_engine.config import get_config
from billing_engine.logging_config import get_logger
from billing_engine.models import (
    ExpiringGracePeriod,
    GracePeriodConfig,
    GraceEnforcementReport,
    Ok,
    Outcome,
    SubscriptionStatus,
    TransitionSource,
)
from billing_engine.services.retry import RetryEngine
from billing_engine.services.subscription_engine import (
    SubscriptionEngine,
    get_subscription_engine,
)

logger = get_logger(__name__)

CANCELLED = "cancelled"
WARNED = "warned"
UNCHANGED = "unchanged"

_DAY_SECONDS = 24 * 60 * 60


def days_remaining(grace_period_end: datetime, now: datetime) -> int:
    """Whole days left in a grace period, rounded up."""
    return math.ceil((grace_period_end - now).total_seconds() / _DAY_SECONDS)


def crossed_threshold(remaining: int, warning_days: List[int]) -> Optional[int]:
    """Smallest warning threshold the remaining days have reached, if any."""
    crossed = [t for t in warning_days if remaining <= t]
    return min(crossed) if crossed else None


class GracePeriodEnforcer:
    """Escalates past_due subscriptions toward warning or cancellation.

    Args:
        engine: Subscription state machine (defaults to global instance)
        config: Enforcement settings (defaults to ``grace_period`` from billing.yaml)
        retry_engine: Retry policy for each transition
    """

    def __init__(
        self,
        engine: Optional[SubscriptionEngine] = None,
        config: Optional[GracePeriodConfig] = None,
        retry_engine: Optional[RetryEngine] = None,
    ):
        self.engine = engine or get_subscription_engine()
        self.config = config or get_config().grace_period_config
        self.retry = retry_engine or RetryEngine()

    def enforce_grace_periods(
        self, config: Optional[GracePeriodConfig] = None
    ) -> GraceEnforcementReport:
        """Run one sweep.

        Idempotent per run: cancelled subscriptions drop out of the scan and
        warnings already recorded for the current grace period are skipped.
        """
        config = config or self.config
        candidates = self.engine.subscriptions.get_past_due_with_grace_period()
        report = GraceEnforcementReport()

        logger.info(
            "grace_period_enforcement_started",
            candidates=len(candidates),
            enable_auto_cancel=config.enable_auto_cancel,
            warning_days=config.warning_days,
        )

        with ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="grace-period"
        ) as pool:
            futures = {
                pool.submit(self._process_subscription, s.id, config): s.id for s in candidates
            }
            for future in as_completed(futures):
                subscription_id = futures[future]
                report.processed += 1
                try:
                    action = future.result()
                except Exception as e:
                    report.errors.append(f"{subscription_id}: {e}")
                    logger.error(
                        "grace_period_enforcement_failed",
                        subscription_id=subscription_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                if action == CANCELLED:
                    report.cancelled += 1
                elif action == WARNED:
                    report.warned += 1

        logger.info(
            "grace_period_enforcement_completed",
            processed=report.processed,
            cancelled=report.cancelled,
            warned=report.warned,
            errors=len(report.errors),
        )
        return report

    def _process_subscription(self, subscription_id: str, config: GracePeriodConfig) -> str:
        subscription = self.engine.subscriptions.find(subscription_id)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.PAST_DUE
            or subscription.grace_period_end is None
        ):
            return UNCHANGED

        now = self.engine.clock.now()
        if subscription.grace_period_end <= now:
            if not config.enable_auto_cancel:
                return UNCHANGED
            outcome = self._run(
                "cancel_after_grace_period",
                lambda: self.engine.cancel_after_grace_period(subscription_id),
            )
            if isinstance(outcome, Ok):
                logger.info("grace_period_subscription_cancelled", subscription_id=subscription_id)
                return CANCELLED
            return UNCHANGED

        remaining = days_remaining(subscription.grace_period_end, now)
        threshold = crossed_threshold(remaining, config.warning_days)
        if threshold is None or self.engine.warning_already_recorded(subscription, threshold):
            return UNCHANGED

        outcome = self._run(
            "record_grace_warning",
            lambda: self.engine.record_grace_warning(subscription_id, threshold, remaining),
        )
        if isinstance(outcome, Ok) and outcome.value.reason is None:
            logger.info(
                "grace_period_warning_sent",
                subscription_id=subscription_id,
                days_remaining=remaining,
                warning_threshold_days=threshold,
            )
            return WARNED
        return UNCHANGED

    def _run(self, name: str, operation) -> Outcome:
        return self.retry.run(operation, name=name)

    def set_grace_period(
        self,
        subscription_id: str,
        days: Optional[int] = None,
        source: TransitionSource = TransitionSource.MANUAL,
    ) -> Outcome:
        """Start a grace period of ``days`` (defaults to ``grace_period_days``)."""
        days = days if days is not None else self.config.grace_period_days
        return self._run(
            "set_grace_period",
            lambda: self.engine.set_grace_period(subscription_id, days, source),
        )

    def get_expiring_grace_periods(self, days_ahead: int = 3) -> List[ExpiringGracePeriod]:
        """List grace periods ending within ``days_ahead`` days, soonest first."""
        now = self.engine.clock.now()
        horizon = now + timedelta(days=days_ahead)
        expiring = []
        for subscription in self.engine.subscriptions.get_grace_periods_ending_before(horizon):
            if subscription.grace_period_end <= now:
                continue
            plan = self.engine.plan_repo.find_by_id(subscription.plan_id)
            expiring.append(
                ExpiringGracePeriod(
                    subscription_id=subscription.id,
                    customer_email=subscription.customer_email,
                    plan_name=plan.name if plan else subscription.plan_id,
                    days_remaining=days_remaining(subscription.grace_period_end, now),
                    grace_period_end=subscription.grace_period_end,
                )
            )
        return sorted(expiring, key=lambda e: e.grace_period_end)


def enforce_grace_periods(config: Optional[GracePeriodConfig] = None) -> GraceEnforcementReport:
    """Run one grace period sweep against the global engine."""
    return GracePeriodEnforcer().enforce_grace_periods(config)
