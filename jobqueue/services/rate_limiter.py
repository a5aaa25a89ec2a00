"""Sliding-window rate limiter.

A window opens on the first hit for a key and lasts window_seconds. Hits are
counted until max_attempts; after the window elapses the next hit opens a
fresh one regardless of the old count. Window records carry a TTL equal to
the time left in the window, so the store forgets them on its own.
"""

import hashlib
import math
from typing import Any, Optional

import structlog

from jobqueue.jobs.models import JobRecord
from jobqueue.stores.base import StateStore
from jobqueue.utils.time import Clock, to_epoch, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_MAX = 60
DEFAULT_WINDOW_SECONDS = 60


class RateLimiter:
    """Admission control keyed by arbitrary strings."""

    def __init__(self, store: StateStore, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or utc_now

    def _now(self) -> float:
        return to_epoch(self._clock())

    def _store_key(self, key: str) -> str:
        return "rate:" + hashlib.sha256(key.encode()).hexdigest()

    async def _window(
        self, key: str, window_seconds: int
    ) -> Optional[dict[str, Any]]:
        """Current window for key, or None if absent or elapsed."""
        data = await self._store.get(self._store_key(key))
        if data is None:
            return None
        if self._now() - data["started_at"] >= window_seconds:
            return None
        return data

    async def attempt(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        """
        Consume one hit if the window has room.

        Returns:
            True if the hit was admitted, False at capacity.
        """
        store_key = self._store_key(key)
        now = self._now()
        data = await self._window(key, window_seconds)

        if data is None:
            await self._store.set(
                store_key, {"count": 1, "started_at": now}, ttl=window_seconds
            )
            return True

        if data["count"] < max_attempts:
            data["count"] += 1
            remaining_ttl = window_seconds - (now - data["started_at"])
            await self._store.set(store_key, data, ttl=max(remaining_ttl, 1))
            return True

        logger.debug("rate_limit_exceeded", key=key, max_attempts=max_attempts)
        return False

    async def check(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        """Whether a hit would be admitted, without consuming one."""
        data = await self._window(key, window_seconds)
        return data is None or data["count"] < max_attempts

    async def remaining(self, key: str, max_attempts: int, window_seconds: int) -> int:
        data = await self._window(key, window_seconds)
        if data is None:
            return max_attempts
        return max(0, max_attempts - data["count"])

    async def available_in(self, key: str, window_seconds: int) -> int:
        """Seconds until the current window closes, floored at 0."""
        data = await self._window(key, window_seconds)
        if data is None:
            return 0
        elapsed = self._now() - data["started_at"]
        return max(0, math.ceil(window_seconds - elapsed))

    async def reset(self, key: str) -> bool:
        return await self._store.delete(self._store_key(key))

    async def stats(
        self, key: str, max_attempts: int, window_seconds: int
    ) -> dict[str, Any]:
        data = await self._window(key, window_seconds)
        used = data["count"] if data else 0
        return {
            "key": key,
            "used": used,
            "remaining": max(0, max_attempts - used),
            "max": max_attempts,
            "resets_in": await self.available_in(key, window_seconds) if data else 0,
            "window_seconds": window_seconds,
        }

    # Key helpers

    @staticmethod
    def key_for_job_type(job_type: str) -> str:
        return f"job_type:{job_type}"

    @staticmethod
    def key_for_queue(queue: str) -> str:
        return f"queue:{queue}"

    @staticmethod
    def key_for(name: str) -> str:
        return f"custom:{name}"

    # Job-level convenience

    def job_limit(self, job: JobRecord) -> Optional[tuple[str, int, int]]:
        """(key, max, window_seconds) for a job, or None if it is unlimited."""
        if not job.rate_limit:
            return None
        limit = job.rate_limit
        return (
            limit.get("key") or self.key_for_job_type(job.job_type),
            int(limit.get("max") or DEFAULT_MAX),
            int(limit.get("window_seconds") or DEFAULT_WINDOW_SECONDS),
        )

    async def allows_job(self, job: JobRecord) -> bool:
        """Check (not consume) a job's limit. Unlimited jobs always pass."""
        limit = self.job_limit(job)
        if limit is None:
            return True
        return await self.check(*limit)

    async def hit_for_job(self, job: JobRecord) -> bool:
        """Consume a hit against a job's limit. Unlimited jobs always pass."""
        limit = self.job_limit(job)
        if limit is None:
            return True
        return await self.attempt(*limit)
