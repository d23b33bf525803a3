"""
Keyed per-resource locks.

Every mutation of a pod, a payment or the daily order-id sequence runs while
holding the lock for that resource, and commits before releasing it:

    pod:<pod_id>          pod status and its bookings
    payment:<order_id>    payment settlement / expiry / refund
    order-seq:<yyyymmdd>  order-id sequence for one gateway-local day

When more than one lock is needed they are taken in the order
payment -> pod, never the reverse.

Two backends:
- LocalLockManager: asyncio.Lock registry, one process (tests, single worker)
- RedisLockManager: redis-py Lock, shared by every worker process
"""
import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from pod_booking.config import get_settings
from pod_booking.domain.errors import LockTimeoutError
from pod_booking.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def pod_lock_key(pod_id: str) -> str:
    return f"pod:{pod_id}"


def payment_lock_key(order_id: str) -> str:
    return f"payment:{order_id}"


def order_sequence_lock_key(day: str) -> str:
    return f"order-seq:{day}"


def _resource_of(key: str) -> str:
    return key.split(":", 1)[0]


class LockManager(ABC):
    """Hands out exclusive, time-bounded locks keyed by resource name."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        yield  # pragma: no cover

    def _timed_out(self, key: str, waited: float) -> LockTimeoutError:
        metrics.record_lock(_resource_of(key), "timeout", waited)
        logger.warning("resource_lock_timeout", lock_key=key, waited_seconds=round(waited, 3))
        return LockTimeoutError(
            f"Timed out acquiring lock {key}",
            lock_key=key,
            timeout_seconds=self.timeout_seconds,
        )


class LocalLockManager(LockManager):
    """
    In-process lock registry.

    Locks are created on demand and dropped once nobody holds or waits for
    them, so the registry does not grow with the number of pods ever touched.
    """

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        super().__init__(
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().lock_timeout_seconds
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                raise self._timed_out(key, time.monotonic() - started) from None

            metrics.record_lock(_resource_of(key), "acquired", time.monotonic() - started)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisLockManager(LockManager):
    """
    Redis-backed locks shared across worker processes.

    Each lock carries a lease so a crashed holder cannot wedge a pod forever.
    The lease must outlive the longest unit of work.
    """

    KEY_PREFIX = "lock:"

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        timeout_seconds: Optional[float] = None,
        lease_seconds: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        super().__init__(
            timeout_seconds if timeout_seconds is not None else settings.lock_timeout_seconds
        )
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else settings.lock_lease_seconds
        )
        self.redis_client = redis_client or aioredis.from_url(settings.redis_url)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.redis_client.lock(
            f"{self.KEY_PREFIX}{key}",
            timeout=self.lease_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        started = time.monotonic()
        acquired = await lock.acquire()
        if not acquired:
            raise self._timed_out(key, time.monotonic() - started)

        metrics.record_lock(_resource_of(key), "acquired", time.monotonic() - started)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease ran out before release; another holder may already own it.
                logger.warning("resource_lock_lease_expired", lock_key=key)

    async def close(self) -> None:
        await self.redis_client.aclose()


_lock_manager: Optional[LockManager] = None


def get_lock_manager() -> LockManager:
    """Get or create the process-wide lock manager for the configured backend."""
    global _lock_manager
    if _lock_manager is None:
        if get_settings().lock_backend == "redis":
            _lock_manager = RedisLockManager()
        else:
            _lock_manager = LocalLockManager()
        logger.info("lock_manager_initialized", backend=get_settings().lock_backend)
    return _lock_manager


def set_lock_manager(manager: Optional[LockManager]) -> None:
    """Replace the process-wide lock manager (None resets to the configured one)."""
    global _lock_manager
    _lock_manager = manager


async def close_lock_manager() -> None:
    """Close the process-wide lock manager's connections, if it holds any."""
    global _lock_manager
    if isinstance(_lock_manager, RedisLockManager):
        await _lock_manager.close()
    _lock_manager = None
