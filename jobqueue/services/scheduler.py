"""Recurring job schedules.

A schedule stores a job template and an interval. check_scheduled_jobs() is
driven by an external periodic trigger (the worker loop, or cron) and
dispatches a fresh copy of every due template.
"""

from typing import TYPE_CHECKING, Optional, Union

import structlog

from jobqueue.errors import InvalidPayloadError, UnknownIntervalError
from jobqueue.jobs.base import Job
from jobqueue.jobs.models import Schedule
from jobqueue.utils.time import after, to_epoch

if TYPE_CHECKING:
    from jobqueue.services.manager import QueueManager

logger = structlog.get_logger(__name__)

# Interval token to seconds
INTERVALS = {
    "minutely": 60,
    "every_5_minutes": 5 * 60,
    "every_15_minutes": 15 * 60,
    "every_30_minutes": 30 * 60,
    "hourly": 60 * 60,
    "twicedaily": 12 * 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
}


def _schedule_key(name: str) -> str:
    return f"schedule:{name}"


class Scheduler:
    """Registration and time-based re-dispatch of recurring jobs."""

    def __init__(
        self, manager: "QueueManager", intervals: Optional[dict[str, int]] = None
    ):
        self._manager = manager
        self._store = manager.store
        self._intervals = dict(INTERVALS)
        if intervals:
            self._intervals.update(intervals)

    def get_intervals(self) -> dict[str, int]:
        return dict(self._intervals)

    def add_interval(self, name: str, seconds: int) -> None:
        if seconds < 1:
            raise ValueError("Interval must be at least one second")
        self._intervals[name] = seconds

    def resolve_interval(self, interval: Union[str, int]) -> tuple[str, int]:
        """
        Resolve an interval token or explicit seconds.

        Raises:
            UnknownIntervalError: If the token is not in the interval table
        """
        if isinstance(interval, int) and not isinstance(interval, bool):
            if interval < 1:
                raise ValueError("Interval must be at least one second")
            return str(interval), interval
        if interval not in self._intervals:
            raise UnknownIntervalError(str(interval), sorted(self._intervals))
        return interval, self._intervals[interval]

    async def schedule(
        self,
        name: str,
        interval: Union[str, int],
        job: Job,
        queue: Optional[str] = None,
    ) -> Schedule:
        """Register (or replace) a named schedule. First run is one interval from now."""
        token, seconds = self.resolve_interval(interval)
        now = self._manager.now()
        entry = Schedule(
            name=name,
            interval=token,
            interval_seconds=seconds,
            payload=self._manager.serializer.serialize(job),
            queue=queue or job.queue or self._manager.default_queue,
            next_run=after(now, seconds),
            created_at=now,
        )
        await self._store.set(_schedule_key(name), entry.to_dict())
        logger.info("job_scheduled", schedule=name, interval=token, queue=entry.queue)
        return entry

    async def unschedule(self, name: str) -> bool:
        return await self._store.delete(_schedule_key(name))

    async def pause(self, name: str) -> bool:
        entry = await self.get_schedule(name)
        if entry is None:
            return False
        entry.enabled = False
        await self._store.set(_schedule_key(name), entry.to_dict())
        return True

    async def resume(self, name: str) -> bool:
        """Re-enable a schedule; it becomes due immediately."""
        entry = await self.get_schedule(name)
        if entry is None:
            return False
        entry.enabled = True
        entry.next_run = self._manager.now()
        await self._store.set(_schedule_key(name), entry.to_dict())
        return True

    async def get_schedules(self) -> dict[str, Schedule]:
        return {
            value["name"]: Schedule.from_dict(value)
            for _, value in await self._store.scan("schedule:")
        }

    async def get_schedule(self, name: str) -> Optional[Schedule]:
        data = await self._store.get(_schedule_key(name))
        return Schedule.from_dict(data) if data else None

    async def exists(self, name: str) -> bool:
        return await self.get_schedule(name) is not None

    async def check_scheduled_jobs(self) -> int:
        """
        Dispatch every enabled schedule whose next_run has passed.

        Disabled schedules are skipped without advancing. Each due slot is
        claimed in the state store before dispatch, so concurrent triggers in
        several processes fire it once.

        Returns:
            Number of jobs dispatched.
        """
        now = self._manager.now()
        dispatched = 0

        for name, entry in (await self.get_schedules()).items():
            if not entry.enabled or entry.next_run > now:
                continue

            try:
                job = self._manager.serializer.deserialize(entry.payload)
            except InvalidPayloadError as e:
                logger.error("schedule_payload_invalid", schedule=name, error=str(e))
                continue

            slot = f"schedule_run:{name}:{int(to_epoch(entry.next_run))}"
            claimed = await self._store.add(
                slot, {"at": to_epoch(now)}, ttl=entry.interval_seconds
            )
            if not claimed:
                continue

            result = await self._manager.dispatch(job, queue=entry.queue)

            entry.last_run = now
            entry.next_run = after(now, entry.interval_seconds)
            await self._store.set(_schedule_key(name), entry.to_dict())

            dispatched += 1
            logger.info(
                "schedule_dispatched",
                schedule=name,
                job_id=result.job_id,
                status=result.status,
                next_run=entry.next_run.isoformat(),
            )

        return dispatched
