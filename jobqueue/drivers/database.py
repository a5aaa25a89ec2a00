"""Relational storage driver (PostgreSQL via asyncpg).

Claiming is a read followed by a conditional update guarded on
status = 'queued'. No row lock is held between the two statements; a worker
that loses the race sees zero affected rows and reports nothing claimed.
"""

import json
from datetime import timedelta
from typing import Any, Optional

import asyncpg
import structlog

from jobqueue.drivers.base import (
    STALE_FINAL_ERROR,
    STALE_RETRY_ERROR,
    QueueDriver,
    calculate_backoff,
    empty_counts,
)
from jobqueue.drivers.schema import SCHEMA
from jobqueue.errors import translate_errors
from jobqueue.jobs.models import BatchStats, JobData, JobRecord
from jobqueue.jobs.types import JobStatus, Priority
from jobqueue.utils.time import Clock, after

logger = structlog.get_logger(__name__)

_PRIORITY_ORDER = (
    "CASE priority WHEN 'high' THEN 0 WHEN 'normal' THEN 1 ELSE 2 END"
)


def _affected(result: str) -> int:
    """Row count from an asyncpg status string such as 'UPDATE 3'."""
    try:
        return int(result.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class DatabaseDriver(QueueDriver):
    """Job persistence in the job_queue table."""

    name = "database"

    def __init__(self, pool, clock: Optional[Clock] = None, owns_pool: bool = False):
        super().__init__(clock)
        self._pool = pool
        self._owns_pool = owns_pool

    @classmethod
    async def connect(
        cls,
        dsn: str,
        min_size: int = 1,
        max_size: int = 10,
        clock: Optional[Clock] = None,
    ) -> "DatabaseDriver":
        """Create a driver with its own connection pool."""
        pool = await asyncpg.create_pool(
            dsn,
            min_size=min_size,
            max_size=max_size,
            command_timeout=30,
            statement_cache_size=0,  # Disable for pgbouncer transaction mode
        )
        return cls(pool, clock=clock, owns_pool=True)

    @property
    def pool(self):
        return self._pool

    @translate_errors("database")
    async def ensure_schema(self) -> None:
        """Create tables and indexes if missing."""
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA)

    @translate_errors("database")
    async def push(self, job: JobData) -> int:
        now = self.now()
        query = """
            INSERT INTO job_queue (job_type, payload, queue, priority, status,
                                   attempts, max_attempts, available_at,
                                   batch_id, chain_id, chain_position,
                                   unique_key, rate_limit, created_at, updated_at)
            VALUES ($1, $2, $3, $4, 'queued', 0, $5, $6, $7, $8, $9, $10, $11, $12, $12)
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            job_id = await conn.fetchval(
                query,
                job.job_type,
                job.payload,
                job.queue,
                Priority(job.priority).value,
                job.max_attempts,
                after(now, job.delay_seconds) if job.delay_seconds > 0 else now,
                job.batch_id,
                job.chain_id,
                job.chain_position,
                job.unique_key,
                json.dumps(job.rate_limit) if job.rate_limit else None,
                now,
            )
        logger.info(
            "job_pushed",
            job_id=job_id,
            job_type=job.job_type,
            queue=job.queue,
            priority=Priority(job.priority).value,
            delay=job.delay_seconds,
        )
        return int(job_id)

    @translate_errors("database")
    async def claim(
        self, queue: str, worker_id: Optional[str] = None
    ) -> Optional[JobRecord]:
        """Claim the next eligible job with a conditional update.

        Returns None if no job is eligible or the candidate was taken first.
        """
        now = self.now()
        select = f"""
            SELECT id FROM job_queue
            WHERE queue = $1 AND status = 'queued' AND available_at <= $2
            ORDER BY {_PRIORITY_ORDER}, created_at, id
            LIMIT 1
        """
        update = """
            UPDATE job_queue SET
                status = 'running',
                reserved_at = $2,
                updated_at = $2,
                worker_id = $3
            WHERE id = $1 AND status = 'queued'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            job_id = await conn.fetchval(select, queue, now)
            if job_id is None:
                return None
            row = await conn.fetchrow(update, job_id, now, worker_id)

        if row is None:
            logger.debug("job_claim_lost_race", job_id=job_id, queue=queue)
            return None

        logger.info(
            "job_claimed",
            job_id=row["id"],
            job_type=row["job_type"],
            queue=queue,
            worker_id=worker_id,
        )
        return self._row_to_job(row)

    @translate_errors("database")
    async def complete(self, job_id: int) -> bool:
        query = """
            UPDATE job_queue SET status = 'completed', updated_at = $2
            WHERE id = $1 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, self.now())
        return _affected(result) > 0

    @translate_errors("database")
    async def fail(
        self, job_id: int, error: str, attempts: int, is_final: bool = True
    ) -> bool:
        now = self.now()
        if is_final:
            query = """
                UPDATE job_queue SET
                    status = 'failed',
                    attempts = $2,
                    error_message = $3,
                    updated_at = $4
                WHERE id = $1 AND status = 'running'
            """
        else:
            query = """
                UPDATE job_queue SET
                    status = 'queued',
                    attempts = $2,
                    error_message = $3,
                    available_at = $4,
                    updated_at = $4,
                    reserved_at = NULL,
                    worker_id = NULL
                WHERE id = $1 AND status = 'running'
            """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, attempts, error, now)
        return _affected(result) > 0

    @translate_errors("database")
    async def release(
        self,
        job_id: int,
        delay_seconds: float = 0,
        attempts: Optional[int] = None,
        error: Optional[str] = None,
    ) -> bool:
        now = self.now()
        query = """
            UPDATE job_queue SET
                status = 'queued',
                attempts = COALESCE($2, attempts),
                error_message = COALESCE($3, error_message),
                available_at = $4,
                updated_at = $5,
                reserved_at = NULL,
                worker_id = NULL
            WHERE id = $1 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                query, job_id, attempts, error, after(now, delay_seconds), now
            )
        return _affected(result) > 0

    @translate_errors("database")
    async def cancel(self, job_id: int) -> bool:
        query = """
            UPDATE job_queue SET status = 'cancelled', updated_at = $2
            WHERE id = $1 AND status = 'queued'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, self.now())
        return _affected(result) > 0

    @translate_errors("database")
    async def find(self, job_id: int) -> Optional[JobRecord]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM job_queue WHERE id = $1", job_id)
        return self._row_to_job(row) if row else None

    @translate_errors("database")
    async def release_stale(self, timeout_minutes: int) -> int:
        """Re-queue or fail jobs running longer than timeout_minutes."""
        now = self.now()
        cutoff = now - timedelta(minutes=timeout_minutes)
        scan = """
            SELECT id, attempts, max_attempts FROM job_queue
            WHERE status = 'running' AND reserved_at < $1
            ORDER BY reserved_at
        """
        # The status/claim-time guard skips jobs released or re-claimed since the scan
        fail_query = """
            UPDATE job_queue SET
                status = 'failed',
                attempts = $2,
                error_message = $3,
                updated_at = $4
            WHERE id = $1 AND status = 'running' AND reserved_at < $5
        """
        retry_query = """
            UPDATE job_queue SET
                status = 'queued',
                attempts = $2,
                error_message = $3,
                available_at = $6,
                updated_at = $4,
                reserved_at = NULL,
                worker_id = NULL
            WHERE id = $1 AND status = 'running' AND reserved_at < $5
        """
        released = 0
        failed = 0
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(scan, cutoff)
            for row in rows:
                attempts = row["attempts"] + 1
                if attempts >= row["max_attempts"]:
                    error = STALE_FINAL_ERROR.format(minutes=timeout_minutes)
                    result = await conn.execute(
                        fail_query, row["id"], attempts, error, now, cutoff
                    )
                    failed += _affected(result)
                else:
                    result = await conn.execute(
                        retry_query,
                        row["id"],
                        attempts,
                        STALE_RETRY_ERROR,
                        now,
                        cutoff,
                        after(now, calculate_backoff(attempts)),
                    )
                    released += _affected(result)

        count = released + failed
        if count > 0:
            logger.warning(
                "stale_jobs_released", count=count, requeued=released, failed=failed
            )
        return count

    @translate_errors("database")
    async def cleanup(self, days: int = 7, include_failed: bool = False) -> int:
        statuses = [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]
        if include_failed:
            statuses.append(JobStatus.FAILED.value)
        cutoff = self.now() - timedelta(days=days)
        query = """
            DELETE FROM job_queue
            WHERE status = ANY($1::text[]) AND updated_at < $2
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, statuses, cutoff)
        count = _affected(result)
        logger.info("jobs_cleaned", count=count, days=days, include_failed=include_failed)
        return count

    @translate_errors("database")
    async def flush_failed(self, older_than_days: Optional[int] = None) -> int:
        async with self._pool.acquire() as conn:
            if older_than_days is None:
                result = await conn.execute(
                    "DELETE FROM job_queue WHERE status = 'failed'"
                )
            else:
                cutoff = self.now() - timedelta(days=older_than_days)
                result = await conn.execute(
                    "DELETE FROM job_queue WHERE status = 'failed' AND updated_at < $1",
                    cutoff,
                )
        count = _affected(result)
        logger.info("failed_jobs_flushed", count=count)
        return count

    @translate_errors("database")
    async def retry_failed(
        self, queue: Optional[str] = None, limit: Optional[int] = None
    ) -> int:
        now = self.now()
        params: list[Any] = [now, limit]
        queue_filter = ""
        if queue:
            queue_filter = "AND queue = $3"
            params.append(queue)

        query = f"""
            UPDATE job_queue SET
                status = 'queued',
                attempts = 0,
                error_message = NULL,
                available_at = $1,
                updated_at = $1,
                reserved_at = NULL,
                worker_id = NULL
            WHERE status = 'failed' AND id IN (
                SELECT id FROM job_queue
                WHERE status = 'failed' {queue_filter}
                ORDER BY updated_at, id
                LIMIT $2
            )
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, *params)
        count = _affected(result)
        logger.info("failed_jobs_retried", count=count, queue=queue)
        return count

    @translate_errors("database")
    async def stats(self, queue: Optional[str] = None) -> dict[str, int]:
        counts = empty_counts()
        async with self._pool.acquire() as conn:
            if queue:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM job_queue "
                    "WHERE queue = $1 GROUP BY status",
                    queue,
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM job_queue GROUP BY status"
                )
        for row in rows:
            counts[row["status"]] = int(row["count"])
        return counts

    @translate_errors("database")
    async def get_jobs(
        self,
        status: Optional[str] = None,
        queue: Optional[str] = None,
        batch_id: Optional[str] = None,
        chain_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobRecord]:
        # Build WHERE clause dynamically
        conditions = []
        params: list[Any] = []
        param_idx = 1

        for column, value in (
            ("status", status),
            ("queue", queue),
            ("batch_id", batch_id),
            ("chain_id", chain_id),
        ):
            if value is not None:
                conditions.append(f"{column} = ${param_idx}")
                params.append(value)
                param_idx += 1

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"""
            SELECT * FROM job_queue
            {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_job(row) for row in rows]

    @translate_errors("database")
    async def get_queues(self) -> dict[str, dict[str, int]]:
        query = """
            SELECT queue, status, COUNT(*) AS count FROM job_queue
            GROUP BY queue, status
            ORDER BY queue
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        queues: dict[str, dict[str, int]] = {}
        for row in rows:
            queues.setdefault(row["queue"], empty_counts())[row["status"]] = int(
                row["count"]
            )
        return queues

    @translate_errors("database")
    async def batch_stats(self, batch_id: str) -> BatchStats:
        query = """
            SELECT status, COUNT(*) AS count FROM job_queue
            WHERE batch_id = $1 GROUP BY status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, batch_id)
        return BatchStats.from_counts({row["status"]: row["count"] for row in rows})

    @translate_errors("database")
    async def cancel_batch(self, batch_id: str) -> int:
        query = """
            UPDATE job_queue SET status = 'cancelled', updated_at = $2
            WHERE batch_id = $1 AND status = 'queued'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, batch_id, self.now())
        return _affected(result)

    async def is_connected(self) -> bool:
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning("driver_unreachable", driver=self.name, error=str(e))
            return False

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()

    def _row_to_job(self, row) -> JobRecord:
        """Convert a database row to a JobRecord."""
        rate_limit = row["rate_limit"]
        if isinstance(rate_limit, str):
            rate_limit = json.loads(rate_limit)
        return JobRecord(
            id=row["id"],
            job_type=row["job_type"],
            payload=row["payload"],
            queue=row["queue"],
            priority=Priority(row["priority"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            available_at=row["available_at"],
            error_message=row["error_message"],
            reserved_at=row["reserved_at"],
            worker_id=row["worker_id"],
            batch_id=row["batch_id"],
            chain_id=row["chain_id"],
            chain_position=row["chain_position"],
            unique_key=row["unique_key"],
            rate_limit=rate_limit,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
