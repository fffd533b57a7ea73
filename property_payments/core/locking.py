"""
Per-transaction mutual exclusion.

Operations on the same transaction id run one at a time; different ids
never block each other. Two backends:

- LocalLockManager: asyncio.Lock registry for a single process
- RedlockManager: Redlock over Redis for several API/worker processes
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog
from redlock import Redlock

from property_payments.config import Settings, get_settings
from property_payments.config.settings import LOCK_LEASE_MARGIN_SECONDS
from property_payments.core.exceptions import LockTimeout
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LocalLockManager:
    """In-process locks, created on demand and dropped when nobody waits."""

    backend = "local"
    # Held only by this process, so no lease can lapse
    max_hold_seconds: Optional[float] = None

    def __init__(self, wait_timeout: float = 30.0):
        self.wait_timeout = wait_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for key for the duration of the block.

        Raises:
            LockTimeout: If the lock is not free within wait_timeout
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
            except asyncio.TimeoutError:
                metrics.record_lock(self.backend, "timeout", time.monotonic() - started)
                logger.warning("transaction_lock_timeout", lock_key=key)
                raise LockTimeout(key, time.monotonic() - started)

            metrics.record_lock(self.backend, "acquired", time.monotonic() - started)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]


class RedlockManager:
    """
    Distributed locks using the Redlock algorithm.

    redlock-py is synchronous, so lock/unlock calls run in a worker thread.
    """

    backend = "redis"

    def __init__(
        self,
        redis_url: str,
        ttl_seconds: int = 30,
        wait_timeout: float = 30.0,
        poll_interval: float = 0.05,
        redlock: Optional[Redlock] = None,
    ):
        self.redis_url = redis_url
        self.ttl_ms = ttl_seconds * 1000
        self.max_hold_seconds = float(max(ttl_seconds - LOCK_LEASE_MARGIN_SECONDS, 1))
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.redlock = redlock

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([self.redis_url], retry_count=1)
        return self.redlock

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """
        Raises:
            LockTimeout: If the lock is not obtained within wait_timeout
        """
        redlock = self._get_redlock()
        resource = f"payment:lock:{key}"
        started = time.monotonic()

        lock = await asyncio.to_thread(redlock.lock, resource, self.ttl_ms)
        while not lock:
            if time.monotonic() - started >= self.wait_timeout:
                metrics.record_lock(self.backend, "timeout", time.monotonic() - started)
                logger.warning("transaction_lock_timeout", lock_key=resource)
                raise LockTimeout(resource, time.monotonic() - started)
            await asyncio.sleep(self.poll_interval)
            lock = await asyncio.to_thread(redlock.lock, resource, self.ttl_ms)

        metrics.record_lock(self.backend, "acquired", time.monotonic() - started)
        logger.debug("transaction_lock_acquired", lock_key=resource)
        held_from = time.monotonic()
        try:
            yield
        finally:
            held = time.monotonic() - held_from
            if held * 1000 >= self.ttl_ms:
                logger.error("transaction_lock_lease_expired", lock_key=resource, held_seconds=held)
            await asyncio.to_thread(redlock.unlock, lock)
            logger.debug("transaction_lock_released", lock_key=resource)


def build_lock_manager(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    if settings.lock_backend == "redis":
        if not settings.redis_url:
            raise ValueError("lock_backend=redis requires redis_url")
        return RedlockManager(
            settings.redis_url,
            ttl_seconds=settings.lock_ttl_seconds,
            wait_timeout=settings.lock_wait_timeout_seconds,
        )
    return LocalLockManager(wait_timeout=settings.lock_wait_timeout_seconds)
