"""Redis storage driver.

Key layout (all under the configured prefix):

    job_id                      counter for new job IDs
    job:{id}                    JSON job record, timestamps as epoch seconds
    queue:{queue}:{priority}    ready jobs, ZSET scored by job ID (FIFO)
    delayed:{queue}             deferred jobs, ZSET scored by available_at
    running                     running jobs, ZSET scored by reserved_at
    status:{queue}:{status}     SET of job IDs per status, for counting
    batch:{batch_id}:jobs       SET of member job IDs
    queues                      SET of known queue names

Every status change is a WATCH/MULTI transaction on the job record that
re-checks the expected status and moves the ID between index structures in
the same commit. Two workers that peek the same ready job both attempt the
transition; the loser's WATCH fails, it re-reads the record, sees it running,
and reports nothing claimed.
"""

import json
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

import redis.asyncio as redis_async
import structlog
from redis.exceptions import RedisError, WatchError

from jobqueue.drivers.base import (
    STALE_FINAL_ERROR,
    STALE_RETRY_ERROR,
    STATUSES,
    QueueDriver,
    calculate_backoff,
    empty_counts,
)
from jobqueue.errors import translate_errors
from jobqueue.jobs.models import BatchStats, JobData, JobRecord
from jobqueue.jobs.types import JobStatus, Priority
from jobqueue.utils.time import Clock, from_epoch, to_epoch

logger = structlog.get_logger(__name__)

# Mutator applied inside a transition. Returning False aborts the transition.
Mutator = Callable[[dict[str, Any]], Optional[bool]]


class RedisDriver(QueueDriver):
    """Job persistence in Redis sorted sets."""

    name = "redis"

    def __init__(
        self,
        client: redis_async.Redis,
        prefix: str = "jobqueue:",
        clock: Optional[Clock] = None,
        owns_client: bool = False,
    ):
        super().__init__(clock)
        self._redis = client
        self._prefix = prefix
        self._owns_client = owns_client

    @classmethod
    def from_url(
        cls, url: str, prefix: str = "jobqueue:", clock: Optional[Clock] = None
    ) -> "RedisDriver":
        """Create a driver with its own client."""
        client = redis_async.from_url(url, decode_responses=True)
        return cls(client, prefix=prefix, clock=clock, owns_client=True)

    @property
    def client(self) -> redis_async.Redis:
        return self._redis

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def _key(self, *parts: Any) -> str:
        return self._prefix + ":".join(str(p) for p in parts)

    def _job_key(self, job_id: int) -> str:
        return self._key("job", job_id)

    def _ready_key(self, queue: str, priority: str) -> str:
        return self._key("queue", queue, priority)

    def _delayed_key(self, queue: str) -> str:
        return self._key("delayed", queue)

    def _running_key(self) -> str:
        return self._key("running")

    def _status_key(self, queue: str, status: str) -> str:
        return self._key("status", queue, status)

    def _batch_key(self, batch_id: str) -> str:
        return self._key("batch", batch_id, "jobs")

    def _queues_key(self) -> str:
        return self._key("queues")

    # -------------------------------------------------------------------------
    # Index maintenance
    # -------------------------------------------------------------------------

    def _unindex(self, pipe, data: dict[str, Any]) -> None:
        """Queue removal of a record from every status-dependent structure."""
        job_id = data["id"]
        queue = data["queue"]
        pipe.srem(self._status_key(queue, data["status"]), job_id)
        if data["status"] == JobStatus.QUEUED.value:
            pipe.zrem(self._ready_key(queue, data["priority"]), job_id)
            pipe.zrem(self._delayed_key(queue), job_id)
        elif data["status"] == JobStatus.RUNNING.value:
            pipe.zrem(self._running_key(), job_id)

    def _index(self, pipe, data: dict[str, Any]) -> None:
        """Queue insertion of a record into the structures for its status."""
        job_id = data["id"]
        queue = data["queue"]
        pipe.sadd(self._status_key(queue, data["status"]), job_id)
        if data["status"] == JobStatus.QUEUED.value:
            if data["available_at"] <= to_epoch(self.now()):
                pipe.zadd(self._ready_key(queue, data["priority"]), {job_id: job_id})
            else:
                pipe.zadd(self._delayed_key(queue), {job_id: data["available_at"]})
        elif data["status"] == JobStatus.RUNNING.value:
            pipe.zadd(self._running_key(), {job_id: data["reserved_at"]})

    def _remove(self, pipe, data: dict[str, Any]) -> None:
        """Queue deletion of a record and all its index entries."""
        self._unindex(pipe, data)
        pipe.delete(self._job_key(data["id"]))
        if data.get("batch_id"):
            pipe.srem(self._batch_key(data["batch_id"]), data["id"])

    async def _transition(
        self, job_id: int, expected: Iterable[JobStatus], mutate: Mutator
    ) -> Optional[dict[str, Any]]:
        """Apply mutate to a job record if its status is one of expected.

        Returns the updated record, or None if the job is missing, not in an
        expected status, or mutate declined.
        """
        allowed = {s.value for s in expected}
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return None
                    before = json.loads(raw)
                    if before["status"] not in allowed:
                        return None
                    after = dict(before)
                    if mutate(after) is False:
                        return None
                    after["updated_at"] = to_epoch(self.now())

                    pipe.multi()
                    self._unindex(pipe, before)
                    pipe.set(key, json.dumps(after))
                    self._index(pipe, after)
                    await pipe.execute()
                    return after
                except WatchError:
                    # Record changed underneath us; re-read and re-check
                    continue

    async def _load_many(self, ids: Iterable[Any]) -> list[dict[str, Any]]:
        ids = list(ids)
        if not ids:
            return []
        raws = await self._redis.mget([self._job_key(i) for i in ids])
        return [json.loads(raw) for raw in raws if raw is not None]

    async def _queue_names(self) -> list[str]:
        return sorted(await self._redis.smembers(self._queues_key()))

    async def _ids_with_status(
        self, statuses: Iterable[str], queue: Optional[str] = None
    ) -> set[int]:
        queues = [queue] if queue else await self._queue_names()
        pipe = self._redis.pipeline(transaction=False)
        for q in queues:
            for status in statuses:
                pipe.smembers(self._status_key(q, status))
        results = await pipe.execute()
        return {int(member) for members in results for member in members}

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    @translate_errors("redis")
    async def push(self, job: JobData) -> int:
        now = to_epoch(self.now())
        job_id = int(await self._redis.incr(self._key("job_id")))
        data = {
            "id": job_id,
            "job_type": job.job_type,
            "payload": job.payload,
            "queue": job.queue,
            "priority": Priority(job.priority).value,
            "status": JobStatus.QUEUED.value,
            "attempts": 0,
            "max_attempts": job.max_attempts,
            "available_at": now + max(0.0, float(job.delay_seconds)),
            "error_message": None,
            "reserved_at": None,
            "worker_id": None,
            "batch_id": job.batch_id,
            "chain_id": job.chain_id,
            "chain_position": job.chain_position,
            "unique_key": job.unique_key,
            "rate_limit": job.rate_limit,
            "created_at": now,
            "updated_at": now,
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job_id), json.dumps(data))
            pipe.sadd(self._queues_key(), job.queue)
            if job.batch_id:
                pipe.sadd(self._batch_key(job.batch_id), job_id)
            self._index(pipe, data)
            await pipe.execute()

        logger.info(
            "job_pushed",
            job_id=job_id,
            job_type=job.job_type,
            queue=job.queue,
            priority=data["priority"],
            delay=job.delay_seconds,
        )
        return job_id

    async def _migrate_delayed(self, queue: str) -> int:
        """Move due deferred jobs into their ready buckets."""
        now = to_epoch(self.now())
        due = await self._redis.zrangebyscore(self._delayed_key(queue), "-inf", now)
        moved = 0
        for member in due:
            if await self._promote(queue, int(member), now):
                moved += 1
        return moved

    async def _promote(self, queue: str, job_id: int, now: float) -> bool:
        """Move one deferred job to its ready bucket if it is still queued and due."""
        key = self._job_key(job_id)
        delayed_key = self._delayed_key(queue)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    data = json.loads(raw) if raw is not None else None
                    if data is not None and data["status"] == JobStatus.QUEUED.value:
                        if data["available_at"] > now:
                            return False
                        pipe.multi()
                        pipe.zrem(delayed_key, job_id)
                        pipe.zadd(
                            self._ready_key(queue, data["priority"]), {job_id: job_id}
                        )
                        await pipe.execute()
                        return True

                    # Record gone, or claimed and moved on since the scan
                    pipe.multi()
                    pipe.zrem(delayed_key, job_id)
                    await pipe.execute()
                    return False
                except WatchError:
                    continue

    async def _drop_ready_entry(self, ready_key: str, job_id: int) -> bool:
        """Remove a ready-bucket ID whose record is missing or no longer queued."""
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if (
                        raw is not None
                        and json.loads(raw)["status"] == JobStatus.QUEUED.value
                    ):
                        return False
                    pipe.multi()
                    pipe.zrem(ready_key, job_id)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    @translate_errors("redis")
    async def claim(
        self, queue: str, worker_id: Optional[str] = None
    ) -> Optional[JobRecord]:
        await self._migrate_delayed(queue)

        for priority in Priority.ordered():
            ready_key = self._ready_key(queue, priority.value)
            while True:
                head = await self._redis.zrange(ready_key, 0, 0)
                if not head:
                    break
                job_id = int(head[0])
                now = self.now()

                def mark_running(data: dict[str, Any]) -> None:
                    data["status"] = JobStatus.RUNNING.value
                    data["reserved_at"] = to_epoch(now)
                    data["worker_id"] = worker_id

                data = await self._transition(job_id, [JobStatus.QUEUED], mark_running)
                if data is not None:
                    logger.info(
                        "job_claimed",
                        job_id=job_id,
                        job_type=data["job_type"],
                        queue=queue,
                        worker_id=worker_id,
                    )
                    return self._to_record(data)

                if await self._redis.zscore(ready_key, job_id) is None:
                    # Another worker claimed it first
                    logger.debug("job_claim_lost_race", job_id=job_id, queue=queue)
                    return None

                # Still indexed as ready but the record is gone or not queued
                if await self._drop_ready_entry(ready_key, job_id):
                    logger.warning(
                        "stale_ready_entry_removed", job_id=job_id, queue=queue
                    )
        return None

    @translate_errors("redis")
    async def complete(self, job_id: int) -> bool:
        def mark_completed(data: dict[str, Any]) -> None:
            data["status"] = JobStatus.COMPLETED.value

        return (
            await self._transition(job_id, [JobStatus.RUNNING], mark_completed)
            is not None
        )

    @translate_errors("redis")
    async def fail(
        self, job_id: int, error: str, attempts: int, is_final: bool = True
    ) -> bool:
        now = to_epoch(self.now())

        def mark_failed(data: dict[str, Any]) -> None:
            data["attempts"] = attempts
            data["error_message"] = error
            if is_final:
                data["status"] = JobStatus.FAILED.value
            else:
                data["status"] = JobStatus.QUEUED.value
                data["available_at"] = now
                data["reserved_at"] = None
                data["worker_id"] = None

        return (
            await self._transition(job_id, [JobStatus.RUNNING], mark_failed)
            is not None
        )

    @translate_errors("redis")
    async def release(
        self,
        job_id: int,
        delay_seconds: float = 0,
        attempts: Optional[int] = None,
        error: Optional[str] = None,
    ) -> bool:
        available_at = to_epoch(self.now()) + max(0.0, float(delay_seconds))

        def mark_queued(data: dict[str, Any]) -> None:
            data["status"] = JobStatus.QUEUED.value
            data["available_at"] = available_at
            data["reserved_at"] = None
            data["worker_id"] = None
            if attempts is not None:
                data["attempts"] = attempts
            if error is not None:
                data["error_message"] = error

        return await self._transition(job_id, [JobStatus.RUNNING], mark_queued) is not None

    @translate_errors("redis")
    async def cancel(self, job_id: int) -> bool:
        def mark_cancelled(data: dict[str, Any]) -> None:
            data["status"] = JobStatus.CANCELLED.value

        return (
            await self._transition(job_id, [JobStatus.QUEUED], mark_cancelled)
            is not None
        )

    @translate_errors("redis")
    async def find(self, job_id: int) -> Optional[JobRecord]:
        raw = await self._redis.get(self._job_key(job_id))
        return self._to_record(json.loads(raw)) if raw else None

    @translate_errors("redis")
    async def release_stale(self, timeout_minutes: int) -> int:
        """Re-queue or fail jobs running longer than timeout_minutes."""
        now = self.now()
        now_ts = to_epoch(now)
        cutoff = to_epoch(now - timedelta(minutes=timeout_minutes))
        candidates = await self._redis.zrangebyscore(
            self._running_key(), "-inf", f"({cutoff}"
        )

        released = 0
        failed = 0
        for member in candidates:
            outcome: dict[str, str] = {}

            def recover(data: dict[str, Any]) -> Optional[bool]:
                # Re-claimed since the scan
                if data["reserved_at"] is None or data["reserved_at"] >= cutoff:
                    return False
                attempts = data["attempts"] + 1
                data["attempts"] = attempts
                data["reserved_at"] = None
                data["worker_id"] = None
                if attempts >= data["max_attempts"]:
                    data["status"] = JobStatus.FAILED.value
                    data["error_message"] = STALE_FINAL_ERROR.format(
                        minutes=timeout_minutes
                    )
                    outcome["result"] = "failed"
                else:
                    data["status"] = JobStatus.QUEUED.value
                    data["error_message"] = STALE_RETRY_ERROR
                    data["available_at"] = now_ts + calculate_backoff(attempts)
                    outcome["result"] = "requeued"
                return None

            data = await self._transition(int(member), [JobStatus.RUNNING], recover)
            if data is None:
                if not await self._redis.exists(self._job_key(member)):
                    await self._redis.zrem(self._running_key(), member)
                continue
            if outcome.get("result") == "failed":
                failed += 1
            else:
                released += 1

        count = released + failed
        if count > 0:
            logger.warning(
                "stale_jobs_released", count=count, requeued=released, failed=failed
            )
        return count

    async def _delete_where(
        self, statuses: list[str], predicate: Callable[[dict[str, Any]], bool]
    ) -> int:
        count = 0
        for job_id in sorted(await self._ids_with_status(statuses)):
            if await self._delete_if(job_id, statuses, predicate):
                count += 1
        return count

    async def _delete_if(
        self,
        job_id: int,
        statuses: list[str],
        predicate: Callable[[dict[str, Any]], bool],
    ) -> bool:
        """Delete a job record if, re-read under WATCH, it still qualifies."""
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return False
                    data = json.loads(raw)
                    if data["status"] not in statuses or not predicate(data):
                        return False
                    pipe.multi()
                    self._remove(pipe, data)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    @translate_errors("redis")
    async def cleanup(self, days: int = 7, include_failed: bool = False) -> int:
        statuses = [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value]
        if include_failed:
            statuses.append(JobStatus.FAILED.value)
        cutoff = to_epoch(self.now() - timedelta(days=days))
        count = await self._delete_where(statuses, lambda d: d["updated_at"] < cutoff)
        logger.info("jobs_cleaned", count=count, days=days, include_failed=include_failed)
        return count

    @translate_errors("redis")
    async def flush_failed(self, older_than_days: Optional[int] = None) -> int:
        if older_than_days is None:
            count = await self._delete_where([JobStatus.FAILED.value], lambda d: True)
        else:
            cutoff = to_epoch(self.now() - timedelta(days=older_than_days))
            count = await self._delete_where(
                [JobStatus.FAILED.value], lambda d: d["updated_at"] < cutoff
            )
        logger.info("failed_jobs_flushed", count=count)
        return count

    @translate_errors("redis")
    async def retry_failed(
        self, queue: Optional[str] = None, limit: Optional[int] = None
    ) -> int:
        records = await self._load_many(
            await self._ids_with_status([JobStatus.FAILED.value], queue)
        )
        records.sort(key=lambda d: (d["updated_at"], d["id"]))
        if limit is not None:
            records = records[:limit]

        available_at = to_epoch(self.now())

        def reset(data: dict[str, Any]) -> None:
            data["status"] = JobStatus.QUEUED.value
            data["attempts"] = 0
            data["error_message"] = None
            data["available_at"] = available_at
            data["reserved_at"] = None
            data["worker_id"] = None

        count = 0
        for data in records:
            if await self._transition(data["id"], [JobStatus.FAILED], reset):
                count += 1
        logger.info("failed_jobs_retried", count=count, queue=queue)
        return count

    async def _counts(self, queues: list[str]) -> dict[str, dict[str, int]]:
        pipe = self._redis.pipeline(transaction=False)
        for q in queues:
            for status in STATUSES:
                pipe.scard(self._status_key(q, status))
        results = iter(await pipe.execute())
        return {q: {status: int(next(results)) for status in STATUSES} for q in queues}

    @translate_errors("redis")
    async def stats(self, queue: Optional[str] = None) -> dict[str, int]:
        queues = [queue] if queue else await self._queue_names()
        totals = empty_counts()
        for counts in (await self._counts(queues)).values():
            for status, count in counts.items():
                totals[status] += count
        return totals

    @translate_errors("redis")
    async def get_jobs(
        self,
        status: Optional[str] = None,
        queue: Optional[str] = None,
        batch_id: Optional[str] = None,
        chain_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobRecord]:
        if batch_id is not None:
            ids = {int(m) for m in await self._redis.smembers(self._batch_key(batch_id))}
        else:
            ids = await self._ids_with_status([status] if status else STATUSES, queue)

        records = [
            d
            for d in await self._load_many(sorted(ids))
            if (status is None or d["status"] == status)
            and (queue is None or d["queue"] == queue)
            and (batch_id is None or d.get("batch_id") == batch_id)
            and (chain_id is None or d.get("chain_id") == chain_id)
        ]
        records.sort(key=lambda d: (d["created_at"], d["id"]), reverse=True)
        return [self._to_record(d) for d in records[offset : offset + limit]]

    @translate_errors("redis")
    async def get_queues(self) -> dict[str, dict[str, int]]:
        return await self._counts(await self._queue_names())

    @translate_errors("redis")
    async def batch_stats(self, batch_id: str) -> BatchStats:
        members = await self._redis.smembers(self._batch_key(batch_id))
        counts: dict[str, int] = {}
        for data in await self._load_many(members):
            counts[data["status"]] = counts.get(data["status"], 0) + 1
        return BatchStats.from_counts(counts)

    @translate_errors("redis")
    async def cancel_batch(self, batch_id: str) -> int:
        members = await self._redis.smembers(self._batch_key(batch_id))
        count = 0
        for member in members:
            if await self.cancel(int(member)):
                count += 1
        return count

    async def is_connected(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (OSError, RedisError) as e:
            logger.warning("driver_unreachable", driver=self.name, error=str(e))
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()

    def _to_record(self, data: dict[str, Any]) -> JobRecord:
        """Convert a stored record to a JobRecord."""
        return JobRecord(
            id=int(data["id"]),
            job_type=data["job_type"],
            payload=data["payload"],
            queue=data["queue"],
            priority=Priority(data["priority"]),
            status=JobStatus(data["status"]),
            attempts=int(data["attempts"]),
            max_attempts=int(data["max_attempts"]),
            available_at=from_epoch(data["available_at"]),
            error_message=data.get("error_message"),
            reserved_at=from_epoch(data.get("reserved_at")),
            worker_id=data.get("worker_id"),
            batch_id=data.get("batch_id"),
            chain_id=data.get("chain_id"),
            chain_position=data.get("chain_position"),
            unique_key=data.get("unique_key"),
            rate_limit=data.get("rate_limit"),
            created_at=from_epoch(data["created_at"]),
            updated_at=from_epoch(data["updated_at"]),
        )
