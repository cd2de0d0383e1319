"""Subscription history store - append-only audit ledger."""

import threading
from typing import Dict, List, Optional

from billing_engine.models import HistoryAction, SubscriptionHistoryEntry


class HistoryStore:
    """Append-only, in-memory ledger of committed subscription transitions.

    Entries are frozen models and are never updated or removed (``clear`` is
    reserved for test resets).
    """

    def __init__(self):
        self._entries: Dict[str, List[SubscriptionHistoryEntry]] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Store lock, held by transactions while they commit."""
        return self._lock

    def append(self, entry: SubscriptionHistoryEntry) -> None:
        with self._lock:
            self._entries.setdefault(entry.subscription_id, []).append(entry)

    def get_by_subscription(self, subscription_id: str) -> List[SubscriptionHistoryEntry]:
        """Get history for a subscription in commit order."""
        with self._lock:
            return list(self._entries.get(subscription_id, []))

    def get_by_action(
        self, subscription_id: str, action: HistoryAction
    ) -> List[SubscriptionHistoryEntry]:
        with self._lock:
            return [e for e in self._entries.get(subscription_id, []) if e.action == action]

    def count_by_action(self, subscription_id: str, action: HistoryAction) -> int:
        return len(self.get_by_action(subscription_id, action))

    def latest(self, subscription_id: str) -> Optional[SubscriptionHistoryEntry]:
        with self._lock:
            entries = self._entries.get(subscription_id)
            return entries[-1] if entries else None

    def count(self, subscription_id: Optional[str] = None) -> int:
        with self._lock:
            if subscription_id is not None:
                return len(self._entries.get(subscription_id, []))
            return sum(len(entries) for entries in self._entries.values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"HistoryStore(entries={self.count()})"


# Global store instance
_store_instance: Optional[HistoryStore] = None
_store_lock = threading.Lock()


def get_history_store() -> HistoryStore:
    """Get global history store instance (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = HistoryStore()
    return _store_instance


def reset_history_store() -> None:
    """Reset global history store (clears all data)."""
    get_history_store().clear()
