"""Tests for provider payment event processing."""

import pytest

from billing_engine.models import (
    HistoryAction,
    PaymentEvent,
    PaymentStatus,
    SubscriptionStatus,
)
from billing_engine.repositories.payment_store import get_payment_store
from billing_engine.services.event_processor import PaymentEventProcessor, get_event_processor


def charge_event(event_type="charge.success", **overrides) -> PaymentEvent:
    fields = {
        "event_type": event_type,
        "reference": "pay_abc",
        "provider_payment_id": "4099260516",
        "amount": 1500000,
        "currency": "NGN",
        "customer_email": "ada@example.com",
        "metadata": {"subscription_id": "sub_1"},
    }
    fields.update(overrides)
    return PaymentEvent(**fields)


@pytest.fixture
def processor(engine):
    return PaymentEventProcessor()


class TestChargeSuccess:
    def test_activates_matched_subscription(self, processor, engine, make_subscription):
        make_subscription("sub_1")

        result = processor.process_event(charge_event())

        assert result.status == "processed"
        assert result.subscription_id == "sub_1"
        assert result.match.confidence == 100
        assert result.result.success
        assert result.result.reason is None
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.ACTIVE

    def test_heuristic_match_without_metadata(self, processor, engine, make_subscription):
        make_subscription("sub_1")

        result = processor.process_event(charge_event(metadata={}))

        assert result.status == "processed"
        assert result.match.confidence == 95
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.ACTIVE

    def test_replay_is_already_active(self, processor, engine, make_subscription):
        make_subscription("sub_1")
        processor.process_event(charge_event())

        replay = processor.process_event(charge_event())

        assert replay.status == "processed"
        assert replay.result.success
        assert replay.result.reason == "already_active"
        assert get_payment_store().count() == 1
        assert engine.history.count_by_action("sub_1", HistoryAction.ACTIVATED) == 1

    def test_replay_without_metadata_matches_by_reference(self, processor, make_subscription):
        make_subscription("sub_1")
        processor.process_event(charge_event())

        replay = processor.process_event(charge_event(metadata={}, customer_email=None))

        assert replay.match.match_reasons == ["payment_reference_match"]
        assert replay.result.reason == "already_active"

    def test_unmatched_payment_recorded_once(self, processor):
        event = charge_event(metadata={}, customer_email="stranger@example.com")

        first = processor.process_event(event)
        second = processor.process_event(event)

        assert first.status == "unmatched"
        assert second.status == "unmatched"
        payment = get_payment_store().find_by_reference("pay_abc")
        assert payment.subscription_id is None
        assert payment.status == PaymentStatus.PENDING
        assert get_payment_store().count() == 1

    def test_unmatched_payment_adopted_by_later_activation(self, processor, engine, make_subscription):
        processor.process_event(charge_event(metadata={}, customer_email="stranger@example.com"))
        make_subscription("sub_1")

        result = processor.process_event(charge_event())

        assert result.status == "processed"
        payment = get_payment_store().find_by_reference("pay_abc")
        assert payment.subscription_id == "sub_1"
        assert payment.status == PaymentStatus.SUCCEEDED
        assert get_payment_store().count() == 1

    def test_amount_mismatch_rejected(self, processor, engine, make_subscription):
        make_subscription("sub_1")

        result = processor.process_event(charge_event(amount=1000000))

        assert result.status == "rejected"
        assert result.reason.startswith("Amount validation failed")
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.INCOMPLETE

    def test_heuristic_underpayment_never_activates(self, processor, engine, clock, make_subscription):
        make_subscription("sub_1", plan_id="plan_team_monthly")
        clock.advance(hours=30)

        result = processor.process_event(charge_event(metadata={}, amount=4400, currency="USD"))

        assert result.status == "unmatched"
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.INCOMPLETE
        assert get_payment_store().find_by_reference("pay_abc").subscription_id is None

    def test_terminal_subscription_rejected(self, processor, engine, make_subscription):
        make_subscription("sub_1")
        engine.mark_unpaid("sub_1")

        result = processor.process_event(charge_event())

        assert result.status == "rejected"
        assert engine.get_subscription("sub_1").status == SubscriptionStatus.UNPAID

    def test_past_due_subscription_recovered(self, processor, engine, make_subscription):
        make_subscription("sub_1")
        processor.process_event(charge_event())
        engine.record_payment_failure("sub_1")

        result = processor.process_event(charge_event(reference="pay_retry"))

        assert result.status == "processed"
        assert result.result.subscription.status == SubscriptionStatus.ACTIVE
        assert engine.history.latest("sub_1").action == HistoryAction.RECOVERED


class TestChargeFailure:
    def test_failure_moves_active_to_past_due(self, processor, engine, make_subscription):
        make_subscription("sub_1")
        processor.process_event(charge_event())

        result = processor.process_event(charge_event("charge.failed", reference="pay_renewal"))

        assert result.status == "processed"
        subscription = engine.get_subscription("sub_1")
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert engine.history.latest("sub_1").reason == "Provider reported charge.failed"
        assert get_payment_store().find_by_reference("pay_renewal").status == PaymentStatus.FAILED

    def test_failure_on_incomplete_reports_invalid_status(self, processor, make_subscription):
        make_subscription("sub_1")
        result = processor.process_event(charge_event("invoice.payment_failed"))
        assert result.status == "processed"
        assert not result.result.success
        assert result.result.reason == "invalid_status"

    def test_unmatched_failure(self, processor):
        result = processor.process_event(charge_event("charge.failed", metadata={}, customer_email=None))
        assert result.status == "unmatched"
        assert get_payment_store().count() == 0


class TestOtherEvents:
    def test_unhandled_event_ignored(self, processor):
        result = processor.process_event(charge_event("transfer.success"))
        assert result.status == "ignored"
        assert result.reason == "Unhandled event transfer.success"

    def test_global_processor_is_singleton(self, engine):
        assert get_event_processor() is get_event_processor()
