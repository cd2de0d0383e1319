"""Subscription store - in-memory storage for subscription state.

Records are copied on the way in and on the way out, so a caller holding a
subscription can mutate it freely without touching stored state. Writes that
belong to a transition go through ``billing_engine.repositories.transaction``.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional

from billing_engine.errors import SubscriptionNotFoundError
from billing_engine.models import Subscription, SubscriptionStatus


class SubscriptionStore:
    """In-memory storage for subscription records.

    Thread-safe storage with lookup by id, user, customer email and status.
    """

    def __init__(self):
        """Initialize subscription store with empty storage."""
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Store lock, held by transactions while they commit."""
        return self._lock

    def add(self, subscription: Subscription) -> None:
        """Add a subscription to the store.

        Args:
            subscription: Subscription to store

        Raises:
            ValueError: If subscription id already exists
        """
        with self._lock:
            if subscription.id in self._subscriptions:
                raise ValueError(f"Subscription with id '{subscription.id}' already exists")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def get(self, subscription_id: str) -> Subscription:
        """Get subscription by id.

        Raises:
            SubscriptionNotFoundError: If id not found
        """
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
            return subscription.model_copy(deep=True)

    def find(self, subscription_id: str) -> Optional[Subscription]:
        """Find subscription by id (returns None if not found)."""
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            return subscription.model_copy(deep=True) if subscription else None

    def get_by_user(self, user_id: str) -> List[Subscription]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.user_id == user_id
            ]

    def find_by_customer_email(
        self,
        email: str,
        statuses: Optional[frozenset] = None,
    ) -> List[Subscription]:
        """Find subscriptions for a customer email (case-insensitive).

        Args:
            email: Customer email
            statuses: Optional set of statuses to restrict to

        Returns:
            Matching subscriptions, newest first
        """
        needle = email.strip().lower()
        with self._lock:
            matches = [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.customer_email
                and s.customer_email.strip().lower() == needle
                and (statuses is None or s.status in statuses)
            ]
        return sorted(matches, key=lambda s: s.created_at, reverse=True)

    def get_by_status(self, status: SubscriptionStatus) -> List[Subscription]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == status
            ]

    def get_past_due_with_grace_period(self) -> List[Subscription]:
        """Get past_due subscriptions that have a grace period end set."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.PAST_DUE and s.grace_period_end is not None
            ]

    def get_grace_periods_ending_before(self, before: datetime) -> List[Subscription]:
        """Get past_due subscriptions whose grace period ends at or before ``before``."""
        return [
            s for s in self.get_past_due_with_grace_period() if s.grace_period_end <= before
        ]

    def get_incomplete_created_before(self, before: datetime) -> List[Subscription]:
        """Get incomplete subscriptions created at or before ``before``."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.INCOMPLETE and s.created_at <= before
            ]

    def get_period_ended_pending_cancel(self, at: datetime) -> List[Subscription]:
        """Get active subscriptions scheduled to cancel whose period has ended."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.ACTIVE
                and s.cancel_at_period_end
                and s.current_period_end is not None
                and s.current_period_end <= at
            ]

    def update(self, subscription: Subscription) -> None:
        """Update an existing subscription.

        Raises:
            SubscriptionNotFoundError: If subscription id not found
        """
        with self._lock:
            if subscription.id not in self._subscriptions:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription.id}")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def upsert(self, subscription: Subscription) -> None:
        """Add or update a subscription."""
        with self._lock:
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def exists(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def get_all(self) -> List[Subscription]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def count_by_status(self, status: SubscriptionStatus) -> int:
        with self._lock:
            return sum(1 for s in self._subscriptions.values() if s.status == status)

    def clear(self) -> None:
        """Clear all subscriptions from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()

    def get_statistics(self) -> Dict[str, int]:
        """Get subscription store statistics.

        Returns:
            Dictionary with the total count and a count per status value
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            stats = {"total_subscriptions": len(subscriptions)}
            for status in SubscriptionStatus:
                stats[status.value] = sum(1 for s in subscriptions if s.status == status)
            return stats

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, subscription_id: str) -> bool:
        return self.exists(subscription_id)

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data)."""
    store = get_subscription_store()
    store.clear()
