"""End-to-end subscription lifecycle through the service layer.

Covers create -> activate -> failed renewal -> grace warnings, then either
recovery by a later payment or cancellation when the grace period runs out.
"""

from datetime import timedelta

import pytest

from billing_engine.models import (
    HistoryAction,
    PaymentStatus,
    SubscriptionStatus,
    TransitionSource,
    parse_provider_event,
)
from billing_engine.services.event_processor import get_event_processor
from billing_engine.services.grace_period import GracePeriodEnforcer


def webhook_event(event_type, reference, amount=1500000):
    return parse_provider_event(
        {
            "event": event_type,
            "data": {
                "id": f"txn_{reference}",
                "reference": reference,
                "amount": amount,
                "currency": "NGN",
                "customer": {"email": "ada@example.com"},
                "metadata": {"subscription_id": "sub_1"},
            },
        }
    )


@pytest.fixture
def active_subscription(engine, make_subscription):
    """sub_1 activated by its first webhook payment."""
    make_subscription("sub_1")
    result = get_event_processor().process_event(webhook_event("charge.success", "pay_first"))
    assert result.result.success
    return engine.get_subscription("sub_1")


@pytest.fixture
def enforcer():
    return GracePeriodEnforcer()


def actions(engine):
    return [entry.action for entry in engine.get_history("sub_1")]


class TestRecoveryPath:
    def test_failed_renewal_recovered_within_grace(self, engine, clock, enforcer, active_subscription):
        processor = get_event_processor()

        failed = processor.process_event(webhook_event("charge.failed", "pay_renewal_1"))
        assert failed.result.success
        past_due = engine.get_subscription("sub_1")
        assert past_due.status == SubscriptionStatus.PAST_DUE
        assert past_due.grace_period_end == clock.now() + timedelta(days=7)

        clock.advance(days=4)
        report = enforcer.enforce_grace_periods()
        assert (report.processed, report.warned, report.cancelled) == (1, 1, 0)
        assert enforcer.enforce_grace_periods().warned == 0

        recovered = processor.process_event(webhook_event("charge.success", "pay_renewal_2"))
        assert recovered.status == "processed"
        assert recovered.result.success

        subscription = engine.get_subscription("sub_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.grace_period_end is None
        assert subscription.retry_count == 0
        assert subscription.current_period_start == clock.now()
        assert actions(engine) == [
            HistoryAction.ACTIVATED,
            HistoryAction.PAYMENT_FAILED,
            HistoryAction.GRACE_PERIOD_WARNING,
            HistoryAction.RECOVERED,
        ]

        statuses = {p.provider_reference: p.status for p in engine.get_payments("sub_1")}
        assert statuses == {
            "pay_first": PaymentStatus.SUCCEEDED,
            "pay_renewal_1": PaymentStatus.FAILED,
            "pay_renewal_2": PaymentStatus.SUCCEEDED,
        }

    def test_enforcer_ignores_recovered_subscription(self, engine, clock, enforcer, active_subscription):
        engine.record_payment_failure("sub_1")
        get_event_processor().process_event(webhook_event("charge.success", "pay_renewal"))

        clock.advance(days=8)

        assert enforcer.enforce_grace_periods().processed == 0
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.ACTIVE


class TestCancellationPath:
    def test_grace_period_runs_out(self, engine, clock, enforcer, active_subscription):
        engine.record_payment_failure("sub_1", TransitionSource.WEBHOOK)

        clock.advance(days=6)
        assert enforcer.enforce_grace_periods().warned == 1

        clock.advance(days=1)
        report = enforcer.enforce_grace_periods()
        assert (report.cancelled, report.errors) == (1, [])

        subscription = engine.get_subscription("sub_1")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.canceled_at == clock.now()
        assert actions(engine) == [
            HistoryAction.ACTIVATED,
            HistoryAction.PAYMENT_FAILED,
            HistoryAction.GRACE_PERIOD_WARNING,
            HistoryAction.CANCELLED,
        ]

    def test_late_payment_after_cancellation_rejected(self, engine, clock, enforcer, active_subscription):
        engine.record_payment_failure("sub_1")
        clock.advance(days=7)
        enforcer.enforce_grace_periods()

        late = get_event_processor().process_event(webhook_event("charge.success", "pay_late"))

        assert late.status == "rejected"
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.CANCELED
        assert engine.history.count_by_action("sub_1", HistoryAction.ACTIVATED) == 1


class TestUnpaidActivation:
    def test_incomplete_subscription_expires(self, engine, clock, make_subscription):
        make_subscription("sub_1")

        clock.advance(hours=24)
        expired = engine.expire_stale_incomplete()

        assert expired == ["sub_1"]
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.INCOMPLETE_EXPIRED

        late = get_event_processor().process_event(webhook_event("charge.success", "pay_late"))
        assert late.status == "rejected"
