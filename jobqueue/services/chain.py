"""Chains - jobs executed one after another.

Only one step of a chain exists as a job at any time. The chain record is
authoritative: it holds every step's payload and the current position, and
each step's completion materializes the next one.
"""

import inspect
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

import structlog

from jobqueue.errors import InvalidPayloadError
from jobqueue.jobs.base import Job
from jobqueue.jobs.models import ChainState
from jobqueue.jobs.registry import Callback
from jobqueue.jobs.types import ChainStatus
from jobqueue.services.events import schemas as events

if TYPE_CHECKING:
    from jobqueue.services.manager import QueueManager

logger = structlog.get_logger(__name__)


def _chain_key(chain_id: str) -> str:
    return f"chain:{chain_id}"


class ChainService:
    """Continuation and lifecycle of dispatched chains.

    Continuation is driven by asynchronous job completion, which can race with
    an administrative delete. A missing chain record is therefore a no-op.
    """

    def __init__(self, manager: "QueueManager"):
        self._manager = manager
        self._store = manager.store

    @property
    def manager(self) -> "QueueManager":
        return self._manager

    async def save(self, state: ChainState) -> None:
        await self._store.set(_chain_key(state.id), state.to_dict())

    async def find(self, chain_id: str) -> Optional[ChainState]:
        data = await self._store.get(_chain_key(chain_id))
        return ChainState.from_dict(data) if data else None

    async def all(self, limit: int = 50) -> list[ChainState]:
        """Chains newest first."""
        chains = [ChainState.from_dict(value) for _, value in await self._store.scan("chain:")]
        chains.sort(key=lambda c: c.created_at, reverse=True)
        return chains[:limit]

    async def delete(self, chain_id: str) -> bool:
        return await self._store.delete(_chain_key(chain_id))

    async def dispatch_step(self, state: ChainState, position: int) -> Optional[int]:
        """Materialize the stored job at position and queue it."""
        try:
            job = self._manager.serializer.deserialize(state.jobs[position])
        except InvalidPayloadError as e:
            await self.mark_failed(state.id, f"Chain step {position} invalid: {e}", position)
            return None

        job.chain_id = state.id
        job.chain_position = position
        result = await self._manager.dispatch(job, queue=state.queue)
        if result.duplicate:
            logger.warning(
                "chain_step_duplicate_blocked", chain_id=state.id, position=position
            )
            await self.mark_failed(
                state.id, f"Chain step {position} duplicate blocked", position
            )
            return None
        return result.job_id

    async def process_next(self, chain_id: str, completed_index: int) -> None:
        """Advance a chain after the step at completed_index finished."""
        state = await self.find(chain_id)
        if state is None:
            logger.info("chain_not_found", chain_id=chain_id)
            return
        if state.status != ChainStatus.RUNNING:
            logger.debug("chain_not_running", chain_id=chain_id, status=state.status.value)
            return
        if completed_index != state.current_index:
            # Repeated completion of a step already advanced past
            logger.debug(
                "chain_step_out_of_order",
                chain_id=chain_id,
                completed_index=completed_index,
                current_index=state.current_index,
            )
            return

        next_index = completed_index + 1
        if next_index >= state.total_jobs:
            await self.mark_complete(chain_id)
            return

        state.current_index = next_index
        await self.save(state)
        await self.dispatch_step(state, next_index)
        logger.info("chain_advanced", chain_id=chain_id, position=next_index)

    async def mark_complete(self, chain_id: str) -> None:
        state = await self.find(chain_id)
        if state is None:
            logger.info("chain_not_found", chain_id=chain_id)
            return

        state.status = ChainStatus.COMPLETED
        state.finished_at = self._manager.now()
        await self.save(state)
        logger.info("chain_completed", chain_id=chain_id, name=state.name)

        await self._run_callback(state, "then", state)
        await self._manager.emit(events.chain_completed(chain_id, state.name))

    async def mark_failed(
        self, chain_id: str, error: str, position: Optional[int] = None
    ) -> None:
        """Fail the whole chain. Later steps are never dispatched."""
        state = await self.find(chain_id)
        if state is None:
            logger.info("chain_not_found", chain_id=chain_id)
            return

        state.status = ChainStatus.FAILED
        state.error = error
        state.finished_at = self._manager.now()
        await self.save(state)
        logger.warning("chain_failed", chain_id=chain_id, name=state.name, error=error)

        await self._run_callback(state, "catch", state, error)
        await self._manager.emit(
            events.chain_failed(
                chain_id,
                state.name,
                error,
                position if position is not None else state.current_index,
            )
        )

    async def _run_callback(self, state: ChainState, name: str, *args: Any) -> None:
        ref = state.callbacks.get(name)
        if not ref:
            return
        try:
            fn = self._manager.callbacks.resolve(ref)
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "chain_callback_error",
                chain_id=state.id,
                callback=name,
                ref=ref,
                error=str(e),
            )


class Chain:
    """
    Builder for a chain of jobs.

    Example:
        chain_id = await (
            manager.chain("onboarding")
            .add(CreateAccount(user_id=1))
            .add(SendWelcome(user_id=1))
            .then(onboarding_done)
            .dispatch()
        )
    """

    def __init__(self, service: ChainService, name: str = ""):
        self._service = service
        self.id = str(uuid.uuid4())
        self.name = name or f"chain-{self.id}"
        self._jobs: list[Job] = []
        self._queue: Optional[str] = None
        self._callbacks: dict[str, str] = {}

    @property
    def job_count(self) -> int:
        return len(self._jobs)

    def add(self, job: Job) -> "Chain":
        self._jobs.append(job)
        return self

    def pipe(self, jobs: Iterable[Any]) -> "Chain":
        """Append jobs in order; anything that is not a Job is skipped."""
        for job in jobs:
            if isinstance(job, Job):
                self._jobs.append(job)
        return self

    def on_queue(self, queue: str) -> "Chain":
        self._queue = queue
        return self

    def then(self, callback: Union[str, Callback]) -> "Chain":
        self._callbacks["then"] = self._service.manager.callbacks.reference(callback)
        return self

    def catch(self, callback: Union[str, Callback]) -> "Chain":
        self._callbacks["catch"] = self._service.manager.callbacks.reference(callback)
        return self

    async def dispatch(self) -> str:
        """Persist the whole chain, then queue only its first step."""
        if not self._jobs:
            return self.id

        manager = self._service.manager
        state = ChainState(
            id=self.id,
            name=self.name,
            queue=self._queue or manager.default_queue,
            jobs=[manager.serializer.serialize(job) for job in self._jobs],
            current_index=0,
            status=ChainStatus.RUNNING,
            created_at=manager.now(),
            callbacks=dict(self._callbacks),
        )
        await self._service.save(state)

        logger.info(
            "chain_started", chain_id=self.id, name=self.name, total_jobs=state.total_jobs
        )
        await manager.emit(events.chain_started(self.id, self.name, state.total_jobs))
        await self._service.dispatch_step(state, 0)
        return self.id
