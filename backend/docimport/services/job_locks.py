"""
Per-Job Lock Registry - single-writer discipline for import jobs

Every mutation of a job (progress, section results, cancellation, discard,
apply) runs while holding that job's lock. Locks are keyed per job, so
updates to different jobs never contend.

Backends:
    - memory: one asyncio.Lock per key inside this process. Locks are held
      in a WeakValueDictionary and disappear once nobody holds or awaits them.
    - redis: a Redis lease lock per key, for deployments that run several
      API processes.

Usage:
    locks = get_job_locks()
    async with locks.hold(job_key(job_id)):
        ...
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import LockError

from docimport.config import get_settings
from docimport.services.errors import JobBusy

logger = logging.getLogger(__name__)

LOCK_PREFIX = "docimport:lock:"


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def target_key(target_document_id: str) -> str:
    return f"target:{target_document_id}"


class JobLockRegistry:
    """
    Hands out per-key mutual exclusion.

    Attributes:
        backend: "memory" or "redis"
        timeout: Seconds to wait for a lock (and Redis lease length)
    """

    def __init__(
        self,
        backend: str = "memory",
        redis_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        if backend not in ("memory", "redis"):
            raise ValueError(f"Unknown job lock backend: {backend}")
        self.backend = backend
        self.redis_url = redis_url
        self.timeout = timeout
        self.redis: Optional[redis.Redis] = None
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _local_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _ensure_connected(self) -> redis.Redis:
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url, decode_responses=True)
        return self.redis

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for key for the duration of the block."""
        if self.backend == "redis":
            client = await self._ensure_connected()
            lock = client.lock(
                f"{LOCK_PREFIX}{key}",
                timeout=self.timeout,
                blocking_timeout=self.timeout,
            )
            if not await lock.acquire():
                logger.warning(f"Timed out waiting for lock {key}")
                raise JobBusy(key=key)
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError as e:
                    # Lease expired while held; the next writer already owns it
                    logger.warning(f"Lost lock {key} before release: {e}")
        else:
            lock = self._local_lock(key)
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for lock {key}")
                raise JobBusy(key=key)
            try:
                yield
            finally:
                lock.release()

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.close()
            self.redis = None


_lock_registry: Optional[JobLockRegistry] = None


def get_job_locks() -> JobLockRegistry:
    """Get the process-wide lock registry (singleton)."""
    global _lock_registry
    if _lock_registry is None:
        settings = get_settings()
        _lock_registry = JobLockRegistry(
            backend=settings.job_lock_backend,
            redis_url=settings.redis_url,
            timeout=settings.job_lock_timeout_seconds,
        )
    return _lock_registry
