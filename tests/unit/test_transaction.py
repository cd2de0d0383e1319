"""Tests for atomic multi-store transactions and the history ledger."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from billing_engine.errors import DuplicatePaymentReferenceError
from billing_engine.models import (
    HistoryAction,
    Payment,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    TransitionSource,
)
from billing_engine.repositories.history_store import HistoryStore
from billing_engine.repositories.payment_store import PaymentStore
from billing_engine.repositories.subscription_store import SubscriptionStore
from billing_engine.repositories.transaction import TransactionClosedError, TransactionManager

NOW = datetime(2026, 1, 15, 12, tzinfo=timezone.utc)


@pytest.fixture
def manager():
    return TransactionManager(SubscriptionStore(), PaymentStore(), HistoryStore())


def subscription(status=SubscriptionStatus.INCOMPLETE) -> Subscription:
    return Subscription(
        id="sub_1", user_id="user-1", plan_id="plan_pro_monthly", status=status, created_at=NOW
    )


def payment(payment_id="pay_1", reference="pay_abc") -> Payment:
    return Payment(
        id=payment_id,
        subscription_id="sub_1",
        amount=1500000,
        currency="NGN",
        provider_reference=reference,
        created_at=NOW,
    )


def history_entry(entry_id="hist_1", action=HistoryAction.ACTIVATED) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        id=entry_id,
        subscription_id="sub_1",
        action=action,
        old_value={"status": "incomplete"},
        new_value={"status": "active"},
        reason="Subscription activated from webhook",
        source=TransitionSource.WEBHOOK,
        created_at=NOW,
    )


class TestAtomicCommit:
    def test_all_writes_land_together(self, manager):
        manager.subscription_store.add(subscription())
        with manager.atomic() as tx:
            tx.save_subscription(subscription(SubscriptionStatus.ACTIVE))
            tx.save_payment(payment())
            tx.append_history(history_entry())
            assert tx.pending_writes == 3
            # Nothing is visible before commit
            assert manager.subscription_store.get("sub_1").status == SubscriptionStatus.INCOMPLETE

        assert manager.subscription_store.get("sub_1").status == SubscriptionStatus.ACTIVE
        assert manager.payment_store.find_by_reference("pay_abc") is not None
        assert manager.history_store.count("sub_1") == 1

    def test_duplicate_reference_aborts_everything(self, manager):
        manager.subscription_store.add(subscription())
        manager.payment_store.add(payment("pay_existing"))

        with pytest.raises(DuplicatePaymentReferenceError):
            with manager.atomic() as tx:
                tx.save_subscription(subscription(SubscriptionStatus.ACTIVE))
                tx.save_payment(payment("pay_new"))
                tx.append_history(history_entry())

        assert manager.subscription_store.get("sub_1").status == SubscriptionStatus.INCOMPLETE
        assert manager.payment_store.count() == 1
        assert manager.history_store.count("sub_1") == 0

    def test_same_reference_staged_twice_rejected(self, manager):
        tx = manager.begin()
        tx.save_payment(payment("pay_1"))
        tx.save_payment(payment("pay_2"))
        with pytest.raises(DuplicatePaymentReferenceError):
            tx.commit()

    def test_exception_in_block_rolls_back(self, manager):
        manager.subscription_store.add(subscription())
        with pytest.raises(RuntimeError):
            with manager.atomic() as tx:
                tx.save_subscription(subscription(SubscriptionStatus.ACTIVE))
                raise RuntimeError("boom")
        assert manager.subscription_store.get("sub_1").status == SubscriptionStatus.INCOMPLETE

    def test_closed_transaction_cannot_be_reused(self, manager):
        tx = manager.begin()
        tx.commit()
        with pytest.raises(TransactionClosedError):
            tx.save_subscription(subscription())

    def test_rollback_discards(self, manager):
        tx = manager.begin()
        tx.append_history(history_entry())
        tx.rollback()
        assert tx.pending_writes == 0
        assert manager.history_store.count() == 0


class TestHistoryStore:
    def test_entries_kept_in_commit_order(self):
        store = HistoryStore()
        store.append(history_entry("hist_1", HistoryAction.ACTIVATED))
        store.append(history_entry("hist_2", HistoryAction.PAYMENT_FAILED))
        assert [e.id for e in store.get_by_subscription("sub_1")] == ["hist_1", "hist_2"]
        assert store.latest("sub_1").id == "hist_2"
        assert store.count_by_action("sub_1", HistoryAction.ACTIVATED) == 1
        assert [e.id for e in store.get_by_action("sub_1", HistoryAction.PAYMENT_FAILED)] == ["hist_2"]

    def test_entries_are_immutable(self):
        entry = history_entry()
        with pytest.raises(ValidationError):
            entry.reason = "rewritten"

    def test_latest_for_unknown_subscription(self):
        assert HistoryStore().latest("sub_missing") is None
