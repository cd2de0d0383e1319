"""Payment store - in-memory storage for payment rows.

A provider reference maps to at most one payment row; the store rejects a
second row for the same reference no matter how often the provider
redelivers the event.
"""

import threading
from typing import Dict, List, Optional

from billing_engine.errors import DuplicatePaymentReferenceError, PaymentNotFoundError
from billing_engine.models import Payment, PaymentStatus


class PaymentStore:
    """In-memory storage for payments.

    Thread-safe storage with lookup by id, provider reference and subscription.
    """

    def __init__(self):
        """Initialize payment store with empty storage."""
        self._payments: Dict[str, Payment] = {}
        self._ids_by_reference: Dict[str, str] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Store lock, held by transactions while they commit."""
        return self._lock

    def check_reference_available(self, payment: Payment) -> None:
        """Raise if another payment row already owns this payment's reference.

        Raises:
            DuplicatePaymentReferenceError: If the reference belongs to a different row
        """
        with self._lock:
            owner = self._ids_by_reference.get(payment.provider_reference)
            if owner is not None and owner != payment.id:
                raise DuplicatePaymentReferenceError(
                    f"Payment reference '{payment.provider_reference}' already recorded as {owner}"
                )

    def add(self, payment: Payment) -> None:
        """Add a payment to the store.

        Raises:
            ValueError: If payment id already exists
            DuplicatePaymentReferenceError: If the provider reference is taken
        """
        with self._lock:
            if payment.id in self._payments:
                raise ValueError(f"Payment with id '{payment.id}' already exists")
            self.check_reference_available(payment)
            self._put(payment)

    def upsert(self, payment: Payment) -> None:
        """Add or update a payment, keeping the reference unique.

        Raises:
            DuplicatePaymentReferenceError: If the provider reference is taken
        """
        with self._lock:
            self.check_reference_available(payment)
            self._put(payment)

    def _put(self, payment: Payment) -> None:
        previous = self._payments.get(payment.id)
        if previous is not None and previous.provider_reference != payment.provider_reference:
            self._ids_by_reference.pop(previous.provider_reference, None)
        self._payments[payment.id] = payment.model_copy(deep=True)
        self._ids_by_reference[payment.provider_reference] = payment.id

    def get(self, payment_id: str) -> Payment:
        """Get payment by id.

        Raises:
            PaymentNotFoundError: If id not found
        """
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise PaymentNotFoundError(f"Payment not found: {payment_id}")
            return payment.model_copy(deep=True)

    def find(self, payment_id: str) -> Optional[Payment]:
        with self._lock:
            payment = self._payments.get(payment_id)
            return payment.model_copy(deep=True) if payment else None

    def find_by_reference(self, reference: str) -> Optional[Payment]:
        """Find payment by provider reference (returns None if not found)."""
        with self._lock:
            payment_id = self._ids_by_reference.get(reference)
            if payment_id is None:
                return None
            return self._payments[payment_id].model_copy(deep=True)

    def get_by_subscription(self, subscription_id: str) -> List[Payment]:
        """Get payments linked to a subscription, oldest first."""
        with self._lock:
            payments = [
                p.model_copy(deep=True)
                for p in self._payments.values()
                if p.subscription_id == subscription_id
            ]
        return sorted(payments, key=lambda p: p.created_at)

    def get_unlinked(self) -> List[Payment]:
        """Get payments not yet matched to a subscription."""
        with self._lock:
            return [
                p.model_copy(deep=True)
                for p in self._payments.values()
                if p.subscription_id is None
            ]

    def count(self) -> int:
        with self._lock:
            return len(self._payments)

    def count_by_reference(self, reference: str) -> int:
        with self._lock:
            return sum(1 for p in self._payments.values() if p.provider_reference == reference)

    def count_by_status(self, status: PaymentStatus) -> int:
        with self._lock:
            return sum(1 for p in self._payments.values() if p.status == status)

    def clear(self) -> None:
        """Clear all payments from the store."""
        with self._lock:
            self._payments.clear()
            self._ids_by_reference.clear()

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"PaymentStore(payments={self.count()})"


# Global store instance
_store_instance: Optional[PaymentStore] = None
_store_lock = threading.Lock()


def get_payment_store() -> PaymentStore:
    """Get global payment store instance (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = PaymentStore()
    return _store_instance


def reset_payment_store() -> None:
    """Reset global payment store (clears all data)."""
    get_payment_store().clear()
