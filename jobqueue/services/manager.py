"""Queue manager - dispatches jobs and runs the claim-and-execute cycle.

One instance per process, constructed at startup and handed to producers and
the worker loop. All shared state lives in the driver and the state store.
"""

import inspect
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog
from prometheus_client import Counter, Histogram

from jobqueue.drivers.base import QueueDriver, calculate_backoff
from jobqueue.errors import DriverError, InvalidPayloadError
from jobqueue.jobs.base import Job
from jobqueue.jobs.models import JobData, JobRecord
from jobqueue.jobs.registry import CallbackRegistry, JobRegistry, default_callbacks
from jobqueue.jobs.serializer import JobSerializer
from jobqueue.jobs.types import Priority
from jobqueue.services.batch import Batch, BatchService
from jobqueue.services.chain import Chain, ChainService
from jobqueue.services.events import schemas as events
from jobqueue.services.events.bus import EventBus
from jobqueue.services.locks import UniqueLock
from jobqueue.services.rate_limiter import RateLimiter
from jobqueue.stores.base import StateStore
from jobqueue.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

JOBS_DISPATCHED_TOTAL = Counter(
    "jobqueue_jobs_dispatched_total",
    "Jobs handed to dispatch",
    ["queue", "status"],  # queued, duplicate
)
JOBS_PROCESSED_TOTAL = Counter(
    "jobqueue_jobs_processed_total",
    "Claimed jobs by outcome",
    ["queue", "outcome"],  # completed, retried, failed, rate_limited
)
JOB_DURATION = Histogram(
    "jobqueue_job_duration_seconds",
    "Handler execution time",
    ["queue"],
)
STALE_JOBS_RELEASED_TOTAL = Counter(
    "jobqueue_stale_jobs_released_total",
    "Jobs recovered from crashed workers",
)


@dataclass
class DispatchResult:
    """Outcome of a dispatch call."""

    job_id: Optional[int]
    status: str  # "queued" or "duplicate"

    @property
    def duplicate(self) -> bool:
        return self.status == "duplicate"

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "status": self.status}


class QueueManager:
    """Orchestrates dispatch, execution, retries and chain continuation."""

    def __init__(
        self,
        driver: QueueDriver,
        store: StateStore,
        *,
        registry: Optional[JobRegistry] = None,
        callbacks: Optional[CallbackRegistry] = None,
        events_bus: Optional[EventBus] = None,
        rate_limiter: Optional[RateLimiter] = None,
        default_queue: str = "default",
        unique_lock_ttl: int = 3600,
        worker_id: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        self._driver = driver
        self._store = store
        self._clock = clock or utc_now
        self._serializer = JobSerializer(registry)
        self._callbacks = callbacks or default_callbacks
        self._events = events_bus
        self._rate_limiter = rate_limiter or RateLimiter(store, clock=self._clock)
        self._locks = UniqueLock(store, default_ttl=unique_lock_ttl, clock=self._clock)
        self._default_queue = default_queue
        self._worker_id = worker_id

        self.batches = BatchService(self)
        self.chains = ChainService(self)

    @property
    def driver(self) -> QueueDriver:
        return self._driver

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def serializer(self) -> JobSerializer:
        return self._serializer

    @property
    def callbacks(self) -> CallbackRegistry:
        return self._callbacks

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def locks(self) -> UniqueLock:
        return self._locks

    @property
    def default_queue(self) -> str:
        return self._default_queue

    def now(self):
        return self._clock()

    async def emit(self, event: events.QueueEvent) -> None:
        """Publish an event; a failing bus never breaks queue operations."""
        if self._events is None:
            return
        try:
            await self._events.publish(event)
        except DriverError as e:
            logger.warning("event_publish_failed", topic=event.topic, error=str(e))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        job: Job,
        *,
        queue: Optional[str] = None,
        priority: Optional[Union[Priority, str]] = None,
        batch_id: Optional[str] = None,
        delay: float = 0,
    ) -> DispatchResult:
        """
        Queue a job.

        A job with a unique_key whose lock is held is not queued; the result
        says "duplicate" instead of raising.

        Args:
            job: The job to queue
            queue: Overrides job.queue and the default queue
            priority: Overrides job.priority
            batch_id: Owning batch, set by Batch.dispatch()
            delay: Seconds before the job becomes claimable

        Raises:
            DriverError: If the backend rejected the push
        """
        job_type = self._serializer.job_type(job)
        queue = queue or job.queue or self._default_queue
        priority = Priority(priority or job.priority)

        if job.unique_key:
            acquired = await self._locks.acquire(job_type, job.unique_key, job.unique_for)
            if not acquired:
                logger.info(
                    "job_duplicate_blocked",
                    job_type=job_type,
                    unique_key=job.unique_key,
                    queue=queue,
                )
                JOBS_DISPATCHED_TOTAL.labels(queue=queue, status="duplicate").inc()
                await self.emit(events.job_duplicate(job_type, job.unique_key))
                return DispatchResult(job_id=None, status="duplicate")

        data = JobData(
            job_type=job_type,
            payload=self._serializer.serialize(job),
            queue=queue,
            priority=priority,
            max_attempts=job.max_attempts,
            delay_seconds=max(0.0, float(delay)),
            batch_id=batch_id,
            chain_id=job.chain_id,
            chain_position=job.chain_position,
            unique_key=job.unique_key,
            rate_limit=job.rate_limit.model_dump() if job.rate_limit else None,
        )
        try:
            job_id = await self._driver.push(data)
        except DriverError:
            if job.unique_key:
                await self._locks.release(job_type, job.unique_key)
            raise

        JOBS_DISPATCHED_TOTAL.labels(queue=queue, status="queued").inc()
        await self.emit(
            events.job_queued(
                job_id, job_type, queue, delay, batch_id=batch_id, chain_id=job.chain_id
            )
        )
        return DispatchResult(job_id=job_id, status="queued")

    async def later(self, delay: float, job: Job, **kwargs: Any) -> DispatchResult:
        """Queue a job that becomes claimable after delay seconds."""
        return await self.dispatch(job, delay=delay, **kwargs)

    def batch(self, name: str = "") -> Batch:
        """Start building a batch."""
        return Batch(self.batches, name)

    def chain(self, name: str = "") -> Chain:
        """Start building a chain."""
        return Chain(self.chains, name)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def process_next(self, queue: Optional[str] = None) -> bool:
        """
        Claim and run one job.

        Handler exceptions never escape: they become a retry with backoff or a
        permanent failure. Backend errors do escape, so the caller can back off.

        Returns:
            True if a job was executed (successfully or not), False if nothing
            was claimable or the claimed job was sent back by its rate limit.
        """
        queue = queue or self._default_queue
        record = await self._driver.claim(queue, self._worker_id)
        if record is None:
            return False

        log = logger.bind(job_id=record.id, job_type=record.job_type, queue=record.queue)

        limit = self._rate_limiter.job_limit(record)
        if limit is not None and not await self._rate_limiter.allows_job(record):
            await self._send_back_rate_limited(record, limit, log)
            return False

        try:
            job = self._serializer.deserialize(record.payload)
        except InvalidPayloadError as e:
            log.error("job_payload_invalid", error=str(e))
            await self._handle_failure(record, None, e, log)
            return True

        # Check-then-consume; another worker may have taken the last slot
        if limit is not None and not await self._rate_limiter.hit_for_job(record):
            await self._send_back_rate_limited(record, limit, log)
            return False

        log.info("job_executing", attempt=record.attempts + 1)
        started = time.monotonic()
        try:
            result = job.handle()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            JOB_DURATION.labels(queue=record.queue).observe(time.monotonic() - started)
            await self._handle_failure(record, job, e, log)
            return True

        JOB_DURATION.labels(queue=record.queue).observe(time.monotonic() - started)
        await self._handle_success(record, log)
        return True

    async def _send_back_rate_limited(
        self, record: JobRecord, limit: tuple[str, int, int], log
    ) -> None:
        key, _, window_seconds = limit
        wait = max(1, await self._rate_limiter.available_in(key, window_seconds))
        # Not an attempt: attempts stay as they were
        await self._driver.release(record.id, wait)
        log.info("job_rate_limited", rate_limit_key=key, available_in=wait)
        JOBS_PROCESSED_TOTAL.labels(queue=record.queue, outcome="rate_limited").inc()
        await self.emit(events.job_rate_limited(record, key, wait))

    async def _handle_success(self, record: JobRecord, log) -> None:
        if not await self._driver.complete(record.id):
            # No longer ours, e.g. re-queued by the stale sweep mid-run
            log.warning("job_completion_lost", outcome="completed")
            return
        log.info("job_completed")
        JOBS_PROCESSED_TOTAL.labels(queue=record.queue, outcome="completed").inc()

        if record.unique_key:
            await self._locks.release(record.job_type, record.unique_key)

        await self.emit(events.job_completed(record))

        if record.chain_id is not None and record.chain_position is not None:
            await self.chains.process_next(record.chain_id, record.chain_position)

    async def _handle_failure(
        self, record: JobRecord, job: Optional[Job], exc: BaseException, log
    ) -> None:
        attempts = record.attempts + 1
        error = str(exc) or type(exc).__name__

        if attempts < record.max_attempts:
            delay = calculate_backoff(attempts)
            if not await self._driver.release(record.id, delay, attempts, error):
                log.warning("job_completion_lost", outcome="retried", error=error)
                return
            log.info("job_retry_scheduled", attempts=attempts, backoff=delay, error=error)
            JOBS_PROCESSED_TOTAL.labels(queue=record.queue, outcome="retried").inc()
            await self.emit(events.job_retrying(record, attempts, delay, error))
            return

        if not await self._driver.fail(record.id, error, attempts, is_final=True):
            log.warning("job_completion_lost", outcome="failed", error=error)
            return
        log.warning("job_failed", attempts=attempts, error=error)
        JOBS_PROCESSED_TOTAL.labels(queue=record.queue, outcome="failed").inc()

        if job is not None:
            try:
                hook = job.failed(exc)
                if inspect.isawaitable(hook):
                    await hook
            except Exception as hook_error:
                log.warning("job_failed_hook_error", error=str(hook_error))

        if record.unique_key:
            await self._locks.release(record.job_type, record.unique_key)

        await self.emit(events.job_failed(record, attempts, error))

        if record.batch_id is not None:
            await self.batches.member_failed(record.batch_id)
        if record.chain_id is not None:
            await self.chains.mark_failed(record.chain_id, error, record.chain_position)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def release_stale_jobs(self, timeout_minutes: int = 30) -> int:
        count = await self._driver.release_stale(timeout_minutes)
        if count:
            STALE_JOBS_RELEASED_TOTAL.inc(count)
            await self.emit(events.stale_released(count, timeout_minutes))
        return count

    async def cleanup_old_jobs(self, days: int = 7, include_failed: bool = False) -> int:
        count = await self._driver.cleanup(days, include_failed)
        await self._store.purge_expired()
        return count

    async def flush_failed(self, older_than_days: Optional[int] = None) -> int:
        return await self._driver.flush_failed(older_than_days)

    async def retry_failed(
        self, queue: Optional[str] = None, limit: Optional[int] = None
    ) -> int:
        return await self._driver.retry_failed(queue, limit)

    async def cancel(self, job_id: int) -> bool:
        """Cancel a queued job. Returns False if it is not queued."""
        record = await self._driver.find(job_id)
        cancelled = await self._driver.cancel(job_id)
        if cancelled:
            logger.info("job_cancelled", job_id=job_id)
            if record is not None and record.unique_key:
                await self._locks.release(record.job_type, record.unique_key)
            await self.emit(events.job_cancelled(job_id))
        return cancelled

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def find(self, job_id: int) -> Optional[JobRecord]:
        return await self._driver.find(job_id)

    async def get_stats(self, queue: Optional[str] = None) -> dict[str, int]:
        return await self._driver.stats(queue)

    async def get_jobs(self, **filters: Any) -> list[JobRecord]:
        return await self._driver.get_jobs(**filters)

    async def get_queues(self) -> dict[str, dict[str, int]]:
        return await self._driver.get_queues()

    async def is_connected(self) -> bool:
        return await self._driver.is_connected()
