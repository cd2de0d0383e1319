"""Idempotency store for deduplicating redelivered operations.

Keys are ``idempotency:<operation>:<sha256[:16]>`` over the sorted JSON of
the operation parameters. Results are cached with a TTL; an expired key
reads as absent. The store only deduplicates results and is never consulted
for business state. Concurrent duplicates are the activation lock's job.

One namespace, two backends (``memory`` or ``redis``) picked from
``idempotency.backend``. With ``redis`` every instance shares the same
records.
"""

import hashlib
import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import redis
from pydantic import BaseModel

from billing_engine.config import get_config
from billing_engine.logging_config import get_logger
from billing_engine.models import IdempotencySettings, RedisSettings
from billing_engine.services.lock_provider import create_redis_client

logger = get_logger(__name__)


def deterministic_key(
    operation: str,
    params: Mapping[str, Any],
    prefix: str = "idempotency:",
) -> str:
    """Build a stable key for an operation and its parameters.

    Parameter order does not matter.

    Examples:
        >>> deterministic_key("activate", {"b": 2, "a": 1}) == deterministic_key("activate", {"a": 1, "b": 2})
        True
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}{operation}:{digest}"


class IdempotencyResult(BaseModel):
    """Outcome of ``with_idempotency``."""

    is_new: bool
    result: Any = None
    from_cache: bool = False


class IdempotencyStore(ABC):
    """Key-value store of cached operation results with expiry."""

    backend: str = "abstract"

    def __init__(self, default_ttl_seconds: int = 300, key_prefix: str = "idempotency:"):
        self.default_ttl_seconds = default_ttl_seconds
        self.key_prefix = key_prefix

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Cached result, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, result: Any, ttl_seconds: Optional[int] = None) -> None:
        """Cache a JSON-serializable result."""

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    def key_for(self, operation: str, params: Mapping[str, Any]) -> str:
        return deterministic_key(operation, params, self.key_prefix)

    def with_idempotency(
        self,
        key: str,
        operation: Callable[[], Any],
        ttl_seconds: Optional[int] = None,
        cache_if: Optional[Callable[[Any], bool]] = None,
        cache_as: Optional[Callable[[Any], Any]] = None,
    ) -> IdempotencyResult:
        """Return the cached result for ``key`` or run ``operation`` once.

        Args:
            key: Idempotency key (see ``deterministic_key``)
            operation: Zero-argument callable producing a JSON-able result
            ttl_seconds: Cache lifetime (defaults to the store default)
            cache_if: Predicate deciding whether a fresh result is cached;
                results failing it are returned but not remembered
            cache_as: Converts a fresh result to the JSON-able value stored;
                a later hit returns that stored value

        Returns:
            IdempotencyResult with is_new=False and from_cache=True on a hit
        """
        cached = self.get(key)
        if cached is not None:
            logger.info("idempotency_hit", key=key, backend=self.backend)
            return IdempotencyResult(is_new=False, result=cached, from_cache=True)

        result = operation()
        if cache_if is None or cache_if(result):
            self.set(key, cache_as(result) if cache_as else result, ttl_seconds)
            logger.debug("idempotency_result_cached", key=key, backend=self.backend)
        return IdempotencyResult(is_new=True, result=result, from_cache=False)


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local idempotency store with lazy expiry."""

    backend = "memory"

    def __init__(
        self,
        default_ttl_seconds: int = 300,
        key_prefix: str = "idempotency:",
        monotonic: Callable[[], float] = time.monotonic,
    ):
        super().__init__(default_ttl_seconds, key_prefix)
        self._records: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.RLock()
        self._monotonic = monotonic

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            result, expires_at = record
            if self._monotonic() >= expires_at:
                del self._records[key]
                return None
            return result

    def set(self, key: str, result: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        with self._lock:
            self._records[key] = (result, self._monotonic() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def purge_expired(self) -> int:
        """Drop expired records. Returns the number removed."""
        now = self._monotonic()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._records.items() if now >= expires_at]
            for key in expired:
                del self._records[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisIdempotencyStore(IdempotencyStore):
    """Idempotency store shared across instances through Redis."""

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        default_ttl_seconds: int = 300,
        key_prefix: str = "idempotency:",
    ):
        super().__init__(default_ttl_seconds, key_prefix)
        self._client = client

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("idempotency_record_unreadable", key=key)
            return None

    def set(self, key: str, result: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        self._client.setex(key, ttl, json.dumps(result, default=str))

    def delete(self, key: str) -> None:
        self._client.delete(key)


def create_idempotency_store(
    settings: IdempotencySettings,
    redis_settings: Optional[RedisSettings] = None,
    redis_client: Optional[redis.Redis] = None,
) -> IdempotencyStore:
    """Build the idempotency store selected by configuration."""
    if settings.backend == "redis":
        client = redis_client or create_redis_client(redis_settings or RedisSettings())
        return RedisIdempotencyStore(client, settings.ttl_seconds, settings.key_prefix)
    return InMemoryIdempotencyStore(settings.ttl_seconds, settings.key_prefix)


# Global store instance
_store_instance: Optional[IdempotencyStore] = None
_store_lock = threading.Lock()


def get_idempotency_store() -> IdempotencyStore:
    """Get the configured idempotency store (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                config = get_config()
                _store_instance = create_idempotency_store(
                    config.idempotency_settings, config.settings.redis
                )
                logger.info("idempotency_store_initialized", backend=_store_instance.backend)
    return _store_instance


def reset_idempotency_store() -> None:
    global _store_instance
    with _store_lock:
        _store_instance = None


def with_idempotency(
    key: str,
    operation: Callable[[], Any],
    ttl_seconds: Optional[int] = None,
    cache_if: Optional[Callable[[Any], bool]] = None,
    cache_as: Optional[Callable[[Any], Any]] = None,
) -> IdempotencyResult:
    """``with_idempotency`` against the configured global store."""
    return get_idempotency_store().with_idempotency(
        key, operation, ttl_seconds, cache_if, cache_as
    )
