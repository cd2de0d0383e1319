"""Concurrent activation from every trigger.

Webhook, client verification and manual activation race for the same
payment. Exactly one of them commits; the others observe already_active.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from billing_engine.models import (
    HistoryAction,
    PaymentData,
    PaymentStatus,
    SubscriptionStatus,
    TransitionSource,
    parse_provider_event,
)
from billing_engine.services.activation import get_activation_service
from billing_engine.services.event_processor import get_event_processor

PAYMENT = PaymentData(reference="pay_abc", payment_id="4099260516", amount=1500000, currency="NGN")


def charge_success_event():
    return parse_provider_event(
        {
            "event": "charge.success",
            "data": {
                "id": 4099260516,
                "reference": "pay_abc",
                "amount": 1500000,
                "currency": "NGN",
                "customer": {"email": "ada@example.com"},
                "metadata": {"subscription_id": "sub_1"},
            },
        }
    )


def run_trigger(source: TransitionSource):
    """Run one trigger and return its TransitionResult."""
    if source == TransitionSource.WEBHOOK:
        processed = get_event_processor().process_event(charge_success_event())
        assert processed.status == "processed"
        return processed.result
    return get_activation_service().activate_subscription("sub_1", PAYMENT, source).result


def race(sources):
    barrier = threading.Barrier(len(sources))

    def worker(source):
        barrier.wait()
        return run_trigger(source)

    with ThreadPoolExecutor(max_workers=len(sources)) as pool:
        return list(pool.map(worker, sources))


def assert_single_activation(engine, results):
    assert all(result.success for result in results)
    fresh = [r for r in results if r.reason is None]
    assert len(fresh) == 1
    assert [r.reason for r in results if r.reason is not None] == ["already_active"] * (len(results) - 1)

    subscription = engine.get_subscription("sub_1")
    assert subscription.status == SubscriptionStatus.ACTIVE
    payments = engine.get_payments("sub_1")
    assert len(payments) == 1
    assert payments[0].status == PaymentStatus.SUCCEEDED
    assert engine.payments.count_by_reference("pay_abc") == 1
    assert engine.history.count_by_action("sub_1", HistoryAction.ACTIVATED) == 1


def test_all_three_triggers_race(engine, make_subscription):
    make_subscription("sub_1")

    results = race([TransitionSource.WEBHOOK, TransitionSource.VERIFICATION, TransitionSource.MANUAL])

    assert_single_activation(engine, results)


@pytest.mark.parametrize("workers", [4, 12])
def test_many_triggers_race(engine, make_subscription, workers):
    make_subscription("sub_1")
    sources = [list(TransitionSource)[i % 3] for i in range(workers)]

    results = race(sources)

    assert_single_activation(engine, results)


def test_redelivered_webhooks_race(engine, make_subscription):
    make_subscription("sub_1")

    results = race([TransitionSource.WEBHOOK] * 6)

    assert_single_activation(engine, results)


def test_replay_after_race_is_cached(engine, make_subscription):
    make_subscription("sub_1")
    race([TransitionSource.WEBHOOK, TransitionSource.VERIFICATION])

    response = get_activation_service().activate_subscription(
        "sub_1", PAYMENT, TransitionSource.VERIFICATION
    )

    assert response.from_cache
    assert response.result.reason == "already_active"
    assert engine.history.count_by_action("sub_1", HistoryAction.ACTIVATED) == 1
