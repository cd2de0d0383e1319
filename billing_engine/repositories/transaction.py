"""Atomic multi-store transactions.

A ``Transaction`` stages subscription, payment and history writes and
applies them in one step while holding every store lock (always in the same
order: subscriptions, payments, history). Validation happens under the locks
before anything is written, so either all staged writes land or none do.
"""

import threading
from contextlib import ExitStack, contextmanager
from typing import Iterator, List, Optional

from billing_engine.errors import DuplicatePaymentReferenceError
from billing_engine.logging_config import get_logger
from billing_engine.models import Payment, Subscription, SubscriptionHistoryEntry
from billing_engine.repositories.history_store import HistoryStore, get_history_store
from billing_engine.repositories.payment_store import PaymentStore, get_payment_store
from billing_engine.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from billing_engine.state_logger import log_history_appended

logger = get_logger(__name__)


class TransactionClosedError(RuntimeError):
    """Raised when a committed or rolled back transaction is reused."""

    pass


class Transaction:
    """Unit of work over the subscription, payment and history stores."""

    def __init__(
        self,
        subscription_store: SubscriptionStore,
        payment_store: PaymentStore,
        history_store: HistoryStore,
    ):
        self._subscription_store = subscription_store
        self._payment_store = payment_store
        self._history_store = history_store
        self._subscriptions: dict[str, Subscription] = {}
        self._payments: dict[str, Payment] = {}
        self._history: List[SubscriptionHistoryEntry] = []
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransactionClosedError("Transaction already committed or rolled back")

    def save_subscription(self, subscription: Subscription) -> None:
        self._ensure_open()
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def save_payment(self, payment: Payment) -> None:
        self._ensure_open()
        self._payments[payment.id] = payment.model_copy(deep=True)

    def append_history(self, entry: SubscriptionHistoryEntry) -> None:
        self._ensure_open()
        self._history.append(entry)

    @property
    def pending_writes(self) -> int:
        return len(self._subscriptions) + len(self._payments) + len(self._history)

    def _validate(self) -> None:
        references: dict[str, str] = {}
        for payment in self._payments.values():
            claimed = references.setdefault(payment.provider_reference, payment.id)
            if claimed != payment.id:
                raise DuplicatePaymentReferenceError(
                    f"Payment reference '{payment.provider_reference}' staged twice"
                )
            self._payment_store.check_reference_available(payment)

    def commit(self) -> None:
        """Apply all staged writes atomically.

        Raises:
            DuplicatePaymentReferenceError: If a staged payment reuses a reference
            TransactionClosedError: If the transaction was already finished
        """
        self._ensure_open()
        with ExitStack() as stack:
            stack.enter_context(self._subscription_store.lock)
            stack.enter_context(self._payment_store.lock)
            stack.enter_context(self._history_store.lock)

            self._validate()

            for subscription in self._subscriptions.values():
                self._subscription_store.upsert(subscription)
            for payment in self._payments.values():
                self._payment_store.upsert(payment)
            for entry in self._history:
                self._history_store.append(entry)

        self._closed = True
        for entry in self._history:
            log_history_appended(
                subscription_id=entry.subscription_id,
                action=entry.action,
                reason=entry.reason,
            )
        logger.debug(
            "transaction_committed",
            subscriptions=len(self._subscriptions),
            payments=len(self._payments),
            history_entries=len(self._history),
        )

    def rollback(self) -> None:
        """Discard staged writes."""
        if self._closed:
            return
        self._subscriptions.clear()
        self._payments.clear()
        self._history.clear()
        self._closed = True
        logger.debug("transaction_rolled_back")


class TransactionManager:
    """Creates transactions bound to a set of stores."""

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        payment_store: Optional[PaymentStore] = None,
        history_store: Optional[HistoryStore] = None,
    ):
        self.subscription_store = subscription_store or get_subscription_store()
        self.payment_store = payment_store or get_payment_store()
        self.history_store = history_store or get_history_store()

    def begin(self) -> Transaction:
        return Transaction(self.subscription_store, self.payment_store, self.history_store)

    @contextmanager
    def atomic(self) -> Iterator[Transaction]:
        """Run a block in a transaction; commit on success, roll back on error.

        Example:
            >>> with manager.atomic() as tx:
            ...     tx.save_subscription(subscription)
            ...     tx.append_history(entry)
        """
        tx = self.begin()
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        tx.commit()


# Global manager instance
_manager_instance: Optional[TransactionManager] = None
_manager_lock = threading.Lock()


def get_transaction_manager() -> TransactionManager:
    """Get global transaction manager bound to the global stores."""
    global _manager_instance
    if _manager_instance is None:
        with _manager_lock:
            if _manager_instance is None:
                _manager_instance = TransactionManager()
    return _manager_instance


def reset_transaction_manager() -> None:
    global _manager_instance
    with _manager_lock:
        _manager_instance = None
