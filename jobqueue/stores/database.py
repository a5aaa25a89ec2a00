"""PostgreSQL-backed state store (job_queue_state table)."""

import json
from datetime import timedelta
from typing import Any, Optional

import structlog

from jobqueue.errors import translate_errors
from jobqueue.stores.base import StateStore
from jobqueue.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _decode(value: Any) -> dict[str, Any]:
    return json.loads(value) if isinstance(value, str) else value


class PostgresStateStore(StateStore):
    """State entries as JSONB rows with an optional expires_at."""

    def __init__(self, pool, clock: Optional[Clock] = None):
        self._pool = pool
        self._clock: Clock = clock or utc_now

    def _expiry(self, ttl: Optional[float]):
        return self._clock() + timedelta(seconds=ttl) if ttl is not None else None

    @translate_errors("database")
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        query = """
            SELECT value FROM job_queue_state
            WHERE key = $1 AND (expires_at IS NULL OR expires_at > $2)
        """
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(query, key, self._clock())
        return _decode(value) if value is not None else None

    @translate_errors("database")
    async def set(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> None:
        query = """
            INSERT INTO job_queue_state (key, value, expires_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                expires_at = EXCLUDED.expires_at
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, key, json.dumps(value), self._expiry(ttl))

    @translate_errors("database")
    async def add(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> bool:
        """Atomic set-if-absent; an expired row is taken over."""
        query = """
            INSERT INTO job_queue_state (key, value, expires_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                expires_at = EXCLUDED.expires_at
            WHERE job_queue_state.expires_at IS NOT NULL
              AND job_queue_state.expires_at <= $4
            RETURNING key
        """
        async with self._pool.acquire() as conn:
            claimed = await conn.fetchval(
                query, key, json.dumps(value), self._expiry(ttl), self._clock()
            )
        return claimed is not None

    @translate_errors("database")
    async def delete(self, key: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM job_queue_state WHERE key = $1", key
            )
        return result.endswith(" 1")

    @translate_errors("database")
    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        query = """
            SELECT key, value FROM job_queue_state
            WHERE key LIKE $1 ESCAPE '\\'
              AND (expires_at IS NULL OR expires_at > $2)
            ORDER BY key
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, _like_escape(prefix) + "%", self._clock())
        return [(row["key"], _decode(row["value"])) for row in rows]

    @translate_errors("database")
    async def purge_expired(self) -> int:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM job_queue_state WHERE expires_at IS NOT NULL AND expires_at <= $1",
                self._clock(),
            )
        count = int(result.rsplit(" ", 1)[-1])
        if count:
            logger.info("state_entries_purged", count=count)
        return count
