"""Per-subscription activation locks.

Two interchangeable lock providers implement ``acquire(key, timeout)`` and
``release(token)``:

- ``InMemoryLockProvider``: a mutex per key, for single-process deployments.
- ``RedisLockProvider``: ``SET key token NX PX ttl`` with compare-and-delete
  release, for deployments running several instances against one Redis.

The backend is picked from ``lock.backend`` in billing.yaml.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis

from billing_engine.config import get_config
from billing_engine.errors import LockReleaseError
from billing_engine.logging_config import get_logger
from billing_engine.models import (
    FailureKind,
    LockSettings,
    Outcome,
    RedisSettings,
    RetryableError,
)
from billing_engine.state_logger import log_lock_event
from billing_engine.utils.id_generator import generate_lock_token

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockToken:
    """Proof of lock ownership handed back by ``acquire``."""

    key: str
    value: str
    acquired_at: float


class LockProvider(ABC):
    """Mutual exclusion keyed by string."""

    backend: str = "abstract"

    @abstractmethod
    def acquire(self, key: str, timeout: float) -> Optional[LockToken]:
        """Block until ``key`` is free or ``timeout`` seconds pass.

        Returns:
            LockToken on success, None on timeout
        """

    @abstractmethod
    def release(self, token: LockToken) -> None:
        """Release a lock held by ``token``.

        Raises:
            LockReleaseError: If ``token`` no longer owns the lock
        """


class _KeyMutex:
    __slots__ = ("lock", "owner", "waiters")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.owner: Optional[str] = None
        self.waiters = 0


class InMemoryLockProvider(LockProvider):
    """Process-local lock provider.

    Holds one ``threading.Lock`` per key while anyone holds or waits for it;
    the entry is dropped once the last user is done so the map does not grow
    with every subscription ever locked.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._mutexes: Dict[str, _KeyMutex] = {}

    def acquire(self, key: str, timeout: float) -> Optional[LockToken]:
        with self._guard:
            mutex = self._mutexes.get(key)
            if mutex is None:
                mutex = self._mutexes[key] = _KeyMutex()
            mutex.waiters += 1

        acquired = mutex.lock.acquire(timeout=max(timeout, 0))

        with self._guard:
            if not acquired:
                self._drop_waiter(key, mutex)
                return None
            token = LockToken(key=key, value=generate_lock_token(), acquired_at=time.monotonic())
            mutex.owner = token.value
            return token

    def release(self, token: LockToken) -> None:
        with self._guard:
            mutex = self._mutexes.get(token.key)
            if mutex is None or mutex.owner != token.value:
                raise LockReleaseError(f"Lock {token.key} is not held by this token")
            mutex.owner = None
            mutex.lock.release()
            self._drop_waiter(token.key, mutex)

    def _drop_waiter(self, key: str, mutex: _KeyMutex) -> None:
        mutex.waiters -= 1
        if mutex.waiters == 0 and self._mutexes.get(key) is mutex:
            del self._mutexes[key]

    def is_locked(self, key: str) -> bool:
        with self._guard:
            mutex = self._mutexes.get(key)
            return mutex is not None and mutex.owner is not None

    def __repr__(self) -> str:
        return f"InMemoryLockProvider(keys={len(self._mutexes)})"


# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLockProvider(LockProvider):
    """Lock provider backed by a shared Redis instance.

    Each lock is a key with a lease TTL, so a crashed holder cannot block a
    subscription forever. Acquisition polls ``SET NX`` until the timeout.

    Args:
        client: redis-py client
        lease_ttl_seconds: Lease length; must exceed the longest transition
        poll_interval_seconds: Wait between acquisition attempts
    """

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        lease_ttl_seconds: float = 30.0,
        poll_interval_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._lease_ms = int(lease_ttl_seconds * 1000)
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep

    def acquire(self, key: str, timeout: float) -> Optional[LockToken]:
        value = generate_lock_token()
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            if self._client.set(key, value, nx=True, px=self._lease_ms):
                return LockToken(key=key, value=value, acquired_at=time.monotonic())
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self._sleep(min(self._poll_interval, remaining))

    def release(self, token: LockToken) -> None:
        released = self._client.eval(_RELEASE_SCRIPT, 1, token.key, token.value)
        if not released:
            raise LockReleaseError(
                f"Lock {token.key} expired or was taken over before release"
            )

    def __repr__(self) -> str:
        return f"RedisLockProvider(lease_ms={self._lease_ms})"


def create_redis_client(settings: RedisSettings) -> redis.Redis:
    """Build a redis-py client from settings."""
    return redis.Redis.from_url(
        settings.url,
        socket_timeout=settings.socket_timeout_seconds,
        decode_responses=True,
    )


def create_lock_provider(
    lock_settings: LockSettings,
    redis_settings: Optional[RedisSettings] = None,
    redis_client: Optional[redis.Redis] = None,
) -> LockProvider:
    """Build the lock provider selected by configuration."""
    if lock_settings.backend == "redis":
        client = redis_client or create_redis_client(redis_settings or RedisSettings())
        return RedisLockProvider(
            client,
            lease_ttl_seconds=lock_settings.lease_ttl_seconds,
            poll_interval_seconds=lock_settings.poll_interval_seconds,
        )
    return InMemoryLockProvider()


def subscription_lock_key(subscription_id: str, prefix: str = "lock:") -> str:
    """Lock key shared by every transition of one subscription."""
    return f"{prefix}subscription:{subscription_id}"


class SubscriptionLock:
    """Runs functions under a per-subscription lock.

    Args:
        provider: Lock provider (defaults to the configured global provider)
        key_prefix: Key namespace
    """

    def __init__(self, provider: Optional[LockProvider] = None, key_prefix: Optional[str] = None):
        self.provider = provider or get_lock_provider()
        self.key_prefix = key_prefix or get_config().lock_settings.key_prefix

    def run(self, subscription_id: str, timeout: float, fn: Callable[[], Outcome]) -> Outcome:
        """Run ``fn`` while holding the subscription's lock.

        Returns:
            Whatever ``fn`` returns, or ``RetryableError(LOCK_TIMEOUT)`` when
            the lock could not be acquired within ``timeout`` seconds
        """
        key = subscription_lock_key(subscription_id, self.key_prefix)
        started = time.monotonic()
        token = self.provider.acquire(key, timeout)
        waited_ms = int((time.monotonic() - started) * 1000)

        if token is None:
            log_lock_event(
                "lock_timeout",
                key,
                subscription_id=subscription_id,
                waited_ms=waited_ms,
                backend=self.provider.backend,
            )
            return RetryableError(
                kind=FailureKind.LOCK_TIMEOUT,
                detail=f"Timed out after {timeout}s waiting for subscription {subscription_id}",
            )

        log_lock_event("lock_acquired", key, waited_ms=waited_ms, backend=self.provider.backend)
        try:
            return fn()
        finally:
            held_ms = int((time.monotonic() - token.acquired_at) * 1000)
            try:
                self.provider.release(token)
                log_lock_event("lock_released", key, held_ms=held_ms)
            except LockReleaseError as e:
                logger.error("lock_release_failed", key=key, held_ms=held_ms, error=str(e))


def with_subscription_lock(
    subscription_id: str,
    timeout: float,
    fn: Callable[[], Outcome],
    provider: Optional[LockProvider] = None,
) -> Outcome:
    """Run ``fn`` under the activation lock for ``subscription_id``.

    Returns a retryable ``lock_timeout`` failure instead of raising when the
    lock is busy for longer than ``timeout`` seconds.
    """
    return SubscriptionLock(provider).run(subscription_id, timeout, fn)


# Global provider instance
_provider_instance: Optional[LockProvider] = None
_provider_lock = threading.Lock()


def get_lock_provider() -> LockProvider:
    """Get the configured lock provider (singleton)."""
    global _provider_instance
    if _provider_instance is None:
        with _provider_lock:
            if _provider_instance is None:
                config = get_config()
                _provider_instance = create_lock_provider(
                    config.lock_settings, config.settings.redis
                )
                logger.info("lock_provider_initialized", backend=_provider_instance.backend)
    return _provider_instance


def reset_lock_provider() -> None:
    global _provider_instance
    with _provider_lock:
        _provider_instance = None
