"""Tests for QueueManager dispatch and the claim-and-execute cycle."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobqueue.drivers.base import STALE_RETRY_ERROR
from jobqueue.errors import DriverError
from jobqueue.jobs.base import RateLimit
from jobqueue.jobs.models import JobData
from jobqueue.jobs.types import JobStatus, Priority
from jobqueue.services.manager import DispatchResult, QueueManager
from jobqueue.stores.redis_store import RedisStateStore

from queue_helpers import (
    DURING_HANDLE,
    EXECUTED,
    FAILED_HOOKS,
    EchoJob,
    FailingJob,
    HookedJob,
    SyncEchoJob,
)


def _topics(bus, topic=None):
    return [e.topic for e in bus.recent(topic)]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_queues_job(self, manager, bus):
        result = await manager.dispatch(EchoJob(value="a"))

        assert isinstance(result, DispatchResult)
        assert result.status == "queued"
        record = await manager.find(result.job_id)
        assert record.status == JobStatus.QUEUED
        assert record.job_type == "echo"
        assert record.queue == "default"
        assert _topics(bus) == ["job.queued"]

    @pytest.mark.asyncio
    async def test_queue_and_priority_resolution(self, manager):
        job = EchoJob(queue="emails", priority=Priority.LOW)
        record = await manager.find((await manager.dispatch(job)).job_id)
        assert record.queue == "emails"
        assert record.priority == Priority.LOW

        result = await manager.dispatch(job, queue="other", priority="high")
        record = await manager.find(result.job_id)
        assert record.queue == "other"
        assert record.priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_later_defers_job(self, manager, clock):
        result = await manager.later(30, EchoJob(value="later"))
        record = await manager.find(result.job_id)
        assert record.available_at == clock() + timedelta(seconds=30)

        assert await manager.process_next() is False
        clock.advance(30)
        assert await manager.process_next() is True
        assert EXECUTED == ["later"]

    @pytest.mark.asyncio
    async def test_duplicate_unique_job_blocked(self, manager, bus):
        first = await manager.dispatch(EchoJob(value="a", unique_key="order-1"))
        second = await manager.dispatch(EchoJob(value="b", unique_key="order-1"))

        assert first.status == "queued"
        assert second.duplicate
        assert second.job_id is None
        assert (await manager.get_stats())["queued"] == 1
        assert _topics(bus, "job.duplicate") == ["job.duplicate"]

    @pytest.mark.asyncio
    async def test_unique_lock_released_on_completion(self, manager):
        await manager.dispatch(EchoJob(unique_key="order-1"))
        await manager.process_next()

        again = await manager.dispatch(EchoJob(unique_key="order-1"))
        assert again.status == "queued"

    @pytest.mark.asyncio
    async def test_unique_lock_released_on_cancel(self, manager):
        first = await manager.dispatch(EchoJob(unique_key="order-1"))
        assert await manager.cancel(first.job_id) is True

        again = await manager.dispatch(EchoJob(unique_key="order-1"))
        assert again.status == "queued"

    @pytest.mark.asyncio
    async def test_failed_push_releases_unique_lock(self, store, registry):
        driver = MagicMock()
        driver.push = AsyncMock(side_effect=DriverError("down", "redis"))
        manager = QueueManager(driver, store, registry=registry)

        with pytest.raises(DriverError):
            await manager.dispatch(EchoJob(unique_key="order-1"))
        assert not await manager.locks.is_locked("echo", "order-1")


class TestProcessNext:
    @pytest.mark.asyncio
    async def test_empty_queue(self, manager):
        assert await manager.process_next() is False

    @pytest.mark.asyncio
    async def test_success_completes_job(self, manager, bus):
        result = await manager.dispatch(EchoJob(value="hello"))

        assert await manager.process_next() is True
        assert EXECUTED == ["hello"]
        record = await manager.find(result.job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.worker_id == "test-host:1"
        assert _topics(bus, "job.completed") == ["job.completed"]

    @pytest.mark.asyncio
    async def test_sync_handler(self, manager):
        await manager.dispatch(SyncEchoJob(value="x"))
        assert await manager.process_next() is True
        assert EXECUTED == ["sync:x"]

    @pytest.mark.asyncio
    async def test_priority_order(self, manager):
        await manager.dispatch(EchoJob(value="low", priority=Priority.LOW))
        await manager.dispatch(EchoJob(value="normal"))
        await manager.dispatch(EchoJob(value="high", priority=Priority.HIGH))

        while await manager.process_next():
            pass
        assert EXECUTED == ["high", "normal", "low"]

    @pytest.mark.asyncio
    async def test_retry_backoff_then_permanent_failure(self, manager, clock, bus):
        result = await manager.dispatch(FailingJob(message="nope", max_attempts=3))
        job_id = result.job_id

        assert await manager.process_next() is True
        record = await manager.find(job_id)
        assert record.status == JobStatus.QUEUED
        assert record.attempts == 1
        assert record.error_message == "nope"
        assert record.available_at == clock() + timedelta(seconds=120)

        # Not claimable before the backoff elapses
        clock.advance(119)
        assert await manager.process_next() is False
        clock.advance(1)
        assert await manager.process_next() is True
        record = await manager.find(job_id)
        assert record.attempts == 2
        assert record.available_at == clock() + timedelta(seconds=240)

        clock.advance(240)
        assert await manager.process_next() is True
        record = await manager.find(job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 3

        assert FAILED_HOOKS == ["nope"]
        assert _topics(bus, "job.retrying") == ["job.retrying", "job.retrying"]
        assert _topics(bus, "job.failed") == ["job.failed"]
        assert [e.payload["delay"] for e in bus.recent("job.retrying")] == [120, 240]

    @pytest.mark.asyncio
    async def test_single_attempt_fails_immediately(self, manager):
        result = await manager.dispatch(FailingJob(max_attempts=1))
        await manager.process_next()
        record = await manager.find(result.job_id)
        assert record.status == JobStatus.FAILED
        assert record.attempts == 1

    @pytest.mark.asyncio
    async def test_unique_lock_released_on_final_failure(self, manager):
        await manager.dispatch(FailingJob(max_attempts=1, unique_key="k"))
        await manager.process_next()
        assert not await manager.locks.is_locked("failing", "k")

    @pytest.mark.asyncio
    async def test_invalid_payload_consumes_attempts(self, manager, driver):
        job_id = await driver.push(
            JobData(job_type="ghost", payload="not json", max_attempts=1)
        )
        assert await manager.process_next() is True
        record = await manager.find(job_id)
        assert record.status == JobStatus.FAILED
        assert "not valid JSON" in record.error_message

    @pytest.mark.asyncio
    async def test_rate_limited_job_sent_back(self, manager, clock, bus):
        limit = RateLimit(max=1, window_seconds=60)
        await manager.dispatch(EchoJob(value="first", rate_limit=limit))
        second = await manager.dispatch(EchoJob(value="second", rate_limit=limit))

        assert await manager.process_next() is True
        assert await manager.process_next() is False
        assert EXECUTED == ["first"]

        record = await manager.find(second.job_id)
        assert record.status == JobStatus.QUEUED
        assert record.attempts == 0
        assert record.available_at == clock() + timedelta(seconds=60)
        assert _topics(bus, "job.rate_limited") == ["job.rate_limited"]

        clock.advance(60)
        assert await manager.process_next() is True
        assert EXECUTED == ["first", "second"]

    @pytest.mark.asyncio
    async def test_handler_error_in_event_subscriber_is_contained(self, manager, bus):
        def explode(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe("*", explode)
        await manager.dispatch(EchoJob(value="ok"))
        assert await manager.process_next() is True
        assert EXECUTED == ["ok"]

    @pytest.mark.asyncio
    async def test_completed_event_fires_exactly_once(self, manager, bus):
        seen = []
        bus.subscribe("job.completed", lambda e: seen.append(e.payload["job_id"]))

        result = await manager.dispatch(EchoJob())
        await manager.process_next()
        await manager.process_next()

        assert seen == [result.job_id]

    @pytest.mark.asyncio
    async def test_manager_without_bus(self, driver, registry, redis_client, clock):
        store = RedisStateStore(redis_client, prefix="test:")
        manager = QueueManager(driver, store, registry=registry, clock=clock)
        await manager.dispatch(EchoJob(value="quiet"))
        assert await manager.process_next() is True


class TestLostOwnership:
    """The stale sweep re-queues or fails a job while its handler still runs."""

    @pytest.fixture
    def stale_sweep_mid_run(self, manager, clock):
        async def sweep():
            clock.advance(minutes=31)
            await manager.release_stale_jobs(30)

        DURING_HANDLE.append(sweep)

    @pytest.mark.asyncio
    async def test_late_completion_is_dropped(self, manager, bus, stale_sweep_mid_run):
        chain_id = await (
            manager.chain()
            .add(HookedJob(value="slow", unique_key="slow"))
            .add(EchoJob(value="next"))
            .dispatch()
        )

        assert await manager.process_next() is True
        assert EXECUTED == ["hooked:slow"]

        (record,) = await manager.get_jobs(chain_id=chain_id)
        assert record.status == JobStatus.QUEUED
        assert record.attempts == 1
        assert (await manager.chains.find(chain_id)).current_index == 0
        assert await manager.locks.is_locked("hooked", "slow")
        assert _topics(bus, "job.completed") == []

    @pytest.mark.asyncio
    async def test_late_retry_is_dropped(self, manager, clock, bus, stale_sweep_mid_run):
        result = await manager.dispatch(HookedJob(fail=True, max_attempts=3))

        assert await manager.process_next() is True

        record = await manager.find(result.job_id)
        assert record.status == JobStatus.QUEUED
        assert record.attempts == 1
        assert record.error_message == STALE_RETRY_ERROR
        assert record.available_at == clock() + timedelta(seconds=120)
        assert _topics(bus, "job.retrying") == []

    @pytest.mark.asyncio
    async def test_late_final_failure_is_dropped(self, manager, bus, stale_sweep_mid_run):
        result = await manager.dispatch(
            HookedJob(fail=True, max_attempts=1, unique_key="once")
        )

        assert await manager.process_next() is True

        record = await manager.find(result.job_id)
        assert record.status == JobStatus.FAILED
        assert record.error_message != "late failure"
        assert FAILED_HOOKS == []
        assert _topics(bus, "job.failed") == []
        # The sweep does not own the lock; it lapses with its TTL
        assert await manager.locks.is_locked("hooked", "once")


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_release_stale_jobs(self, manager, driver, clock, bus):
        await manager.dispatch(EchoJob())
        await driver.claim("default", "crashed-worker")
        clock.advance(minutes=31)

        assert await manager.release_stale_jobs(30) == 1
        assert _topics(bus, "jobs.stale_released") == ["jobs.stale_released"]
        assert await manager.release_stale_jobs(30) == 0

    @pytest.mark.asyncio
    async def test_cleanup_and_flush(self, manager, clock):
        await manager.dispatch(EchoJob())
        await manager.process_next()
        await manager.dispatch(FailingJob(max_attempts=1))
        await manager.process_next()

        clock.advance(days=8)
        assert await manager.cleanup_old_jobs(7) == 1
        assert await manager.flush_failed() == 1
        assert (await manager.get_stats()) == {
            "queued": 0,
            "running": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
        }

    @pytest.mark.asyncio
    async def test_retry_failed(self, manager):
        await manager.dispatch(FailingJob(max_attempts=1))
        await manager.process_next()
        assert await manager.retry_failed() == 1
        assert (await manager.get_stats())["queued"] == 1

    @pytest.mark.asyncio
    async def test_cancel_running_job_refused(self, manager, driver):
        result = await manager.dispatch(EchoJob())
        await driver.claim("default")
        assert await manager.cancel(result.job_id) is False

    @pytest.mark.asyncio
    async def test_introspection(self, manager):
        await manager.dispatch(EchoJob(queue="a"))
        await manager.dispatch(EchoJob(queue="b"))

        assert set(await manager.get_queues()) == {"a", "b"}
        assert len(await manager.get_jobs(queue="a")) == 1
        assert await manager.is_connected() is True
