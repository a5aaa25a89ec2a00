"""Unique-job dispatch locks."""

import hashlib
from typing import Optional

import structlog

from jobqueue.stores.base import StateStore
from jobqueue.utils.time import Clock, to_epoch, utc_now

logger = structlog.get_logger(__name__)


def unique_lock_key(job_type: str, unique_key: str) -> str:
    """
    Generate a stable store key for a unique-job lock.

    Args:
        job_type: Registered job type name
        unique_key: Producer-supplied dedup key

    Returns:
        Store key scoped to the job type
    """
    raw = f"{job_type}:{unique_key}"
    return "unique:" + hashlib.sha256(raw.encode()).hexdigest()


class UniqueLock:
    """TTL-bounded dedup marker preventing duplicate dispatch.

    Set at enqueue, released on completion or final failure. A job that dies
    without reaching either (e.g. a stale job failed by the sweep) keeps its
    lock until the TTL lapses.
    """

    def __init__(
        self, store: StateStore, default_ttl: int = 3600, clock: Optional[Clock] = None
    ):
        self._store = store
        self._default_ttl = default_ttl
        self._clock = clock or utc_now

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    async def acquire(
        self, job_type: str, unique_key: str, ttl: Optional[int] = None
    ) -> bool:
        """Take the lock. Returns False if it is already held."""
        return await self._store.add(
            unique_lock_key(job_type, unique_key),
            {
                "job_type": job_type,
                "unique_key": unique_key,
                "locked_at": to_epoch(self._clock()),
            },
            ttl=ttl or self._default_ttl,
        )

    async def release(self, job_type: str, unique_key: str) -> bool:
        released = await self._store.delete(unique_lock_key(job_type, unique_key))
        if released:
            logger.debug("unique_lock_released", job_type=job_type, unique_key=unique_key)
        return released

    async def is_locked(self, job_type: str, unique_key: str) -> bool:
        return await self._store.get(unique_lock_key(job_type, unique_key)) is not None
