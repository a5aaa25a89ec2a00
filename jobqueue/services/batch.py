"""Batches - fan-out groups of independent jobs.

A batch stores only its metadata. Progress is always derived from the member
jobs' statuses, so there is a single source of truth.
"""

import inspect
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

import structlog

from jobqueue.jobs.base import Job
from jobqueue.jobs.models import BatchInfo, BatchStats
from jobqueue.jobs.registry import Callback
from jobqueue.services.events import schemas as events

if TYPE_CHECKING:
    from jobqueue.services.manager import QueueManager

logger = structlog.get_logger(__name__)


def _batch_key(batch_id: str) -> str:
    return f"batch:{batch_id}"


class BatchService:
    """Lookup, stats and lifecycle operations on dispatched batches."""

    def __init__(self, manager: "QueueManager"):
        self._manager = manager
        self._store = manager.store
        self._driver = manager.driver

    @property
    def manager(self) -> "QueueManager":
        return self._manager

    async def save(self, info: BatchInfo) -> None:
        await self._store.set(_batch_key(info.id), info.to_dict())

    async def find(self, batch_id: str) -> Optional[BatchInfo]:
        data = await self._store.get(_batch_key(batch_id))
        return BatchInfo.from_dict(data) if data else None

    async def all(self, limit: int = 50) -> list[BatchInfo]:
        """Batches newest first."""
        batches = [
            BatchInfo.from_dict(value)
            for key, value in await self._store.scan("batch:")
            if key.count(":") == 1
        ]
        batches.sort(key=lambda b: b.created_at, reverse=True)
        return batches[:limit]

    async def stats(self, batch_id: str) -> BatchStats:
        return await self._driver.batch_stats(batch_id)

    async def is_finished(self, batch_id: str) -> bool:
        """No member is queued or running."""
        stats = await self.stats(batch_id)
        return stats.queued + stats.running == 0

    async def cancel(self, batch_id: str) -> int:
        """Cancel queued members. Running members are left to finish."""
        count = await self._driver.cancel_batch(batch_id)
        info = await self.find(batch_id)
        if info is not None and info.cancelled_at is None:
            info.cancelled_at = self._manager.now()
            await self.save(info)
        logger.info("batch_cancelled", batch_id=batch_id, cancelled=count)
        await self._manager.emit(events.batch_cancelled(batch_id, count))
        return count

    async def member_failed(self, batch_id: str) -> None:
        """Cancel the rest of a batch that does not tolerate failures."""
        info = await self.find(batch_id)
        if info is None:
            logger.debug("batch_not_found", batch_id=batch_id)
            return
        if not info.allow_failures and info.cancelled_at is None:
            await self.cancel(batch_id)

    async def finalize(self, batch_id: str) -> bool:
        """
        Run completion callbacks once the batch has finished.

        Calls then (no failures) or catch (any failure), then finally. Safe
        to call repeatedly and from several processes: only one call wins.

        Returns:
            True if this call finalized the batch.
        """
        info = await self.find(batch_id)
        if info is None:
            logger.debug("batch_not_found", batch_id=batch_id)
            return False
        if info.finished_at is not None:
            return False

        stats = await self.stats(batch_id)
        if stats.queued + stats.running > 0:
            return False

        now = self._manager.now()
        claimed = await self._store.add(
            f"{_batch_key(batch_id)}:finalized", {"at": now.timestamp()}
        )
        if not claimed:
            return False

        info.finished_at = now
        await self.save(info)

        if stats.failed == 0:
            await self._run_callback(info, "then", info, stats)
        else:
            await self._run_callback(info, "catch", info, stats)
        await self._run_callback(info, "finally", info, stats)

        logger.info("batch_finished", batch_id=batch_id, **stats.to_dict())
        await self._manager.emit(events.batch_finished(batch_id, stats.to_dict()))
        return True

    async def _run_callback(self, info: BatchInfo, name: str, *args: Any) -> None:
        ref = info.callbacks.get(name)
        if not ref:
            return
        try:
            fn = self._manager.callbacks.resolve(ref)
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "batch_callback_error",
                batch_id=info.id,
                callback=name,
                ref=ref,
                error=str(e),
            )


class Batch:
    """
    Builder for a batch of jobs.

    Example:
        batch_id = await (
            manager.batch("nightly-import")
            .add_many(jobs)
            .on_queue("imports")
            .then(notify_done)
            .dispatch()
        )
    """

    def __init__(self, service: BatchService, name: str = ""):
        self._service = service
        self.id = str(uuid.uuid4())
        self.name = name or f"batch-{self.id}"
        self._jobs: list[Job] = []
        self._queue: Optional[str] = None
        self._callbacks: dict[str, str] = {}
        self._allow_failures = True

    @property
    def job_count(self) -> int:
        return len(self._jobs)

    def add(self, job: Job) -> "Batch":
        self._jobs.append(job)
        return self

    def add_many(self, jobs: Iterable[Any]) -> "Batch":
        """Add jobs; anything that is not a Job is skipped."""
        for job in jobs:
            if isinstance(job, Job):
                self._jobs.append(job)
        return self

    def on_queue(self, queue: str) -> "Batch":
        self._queue = queue
        return self

    def _callback(self, name: str, callback: Union[str, Callback]) -> "Batch":
        manager = self._service.manager
        self._callbacks[name] = manager.callbacks.reference(callback)
        return self

    def then(self, callback: Union[str, Callback]) -> "Batch":
        return self._callback("then", callback)

    def catch(self, callback: Union[str, Callback]) -> "Batch":
        return self._callback("catch", callback)

    def finally_(self, callback: Union[str, Callback]) -> "Batch":
        return self._callback("finally", callback)

    def dont_allow_failures(self) -> "Batch":
        self._allow_failures = False
        return self

    async def dispatch(self) -> str:
        """Persist metadata, then queue every member tagged with the batch ID."""
        if not self._jobs:
            return self.id

        manager = self._service.manager
        queue = self._queue or manager.default_queue
        await self._service.save(
            BatchInfo(
                id=self.id,
                name=self.name,
                queue=queue,
                total_jobs=len(self._jobs),
                created_at=manager.now(),
                allow_failures=self._allow_failures,
                callbacks=dict(self._callbacks),
            )
        )

        job_ids = []
        for job in self._jobs:
            result = await manager.dispatch(job, queue=queue, batch_id=self.id)
            if result.job_id is not None:
                job_ids.append(result.job_id)

        logger.info(
            "batch_dispatched", batch_id=self.id, name=self.name, jobs=len(job_ids)
        )
        await manager.emit(events.batch_dispatched(self.id, self.name, job_ids))
        return self.id
