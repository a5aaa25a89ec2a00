"""Tests for batch dispatch, progress and completion callbacks."""

import pytest

from jobqueue.errors import CallbackNotSerializableError
from jobqueue.jobs.types import JobStatus

from queue_helpers import CALLBACK_CALLS, EXECUTED, EchoJob, FailingJob, on_then


async def _drain(manager):
    while await manager.process_next():
        pass


class TestBatchDispatch:
    @pytest.mark.asyncio
    async def test_members_tagged_with_batch(self, manager, bus):
        batch_id = await (
            manager.batch("import")
            .add(EchoJob(value="a"))
            .add_many([EchoJob(value="b"), "not a job", EchoJob(value="c")])
            .dispatch()
        )

        jobs = await manager.get_jobs(batch_id=batch_id)
        assert len(jobs) == 3
        info = await manager.batches.find(batch_id)
        assert info.name == "import"
        assert info.total_jobs == 3
        dispatched = bus.recent("batch.dispatched")
        assert len(dispatched) == 1
        assert len(dispatched[0].payload["job_ids"]) == 3

    @pytest.mark.asyncio
    async def test_on_queue(self, manager):
        batch_id = await manager.batch().add(EchoJob()).on_queue("imports").dispatch()
        jobs = await manager.get_jobs(batch_id=batch_id)
        assert jobs[0].queue == "imports"

    @pytest.mark.asyncio
    async def test_default_name(self, manager):
        batch = manager.batch()
        assert batch.name == f"batch-{batch.id}"

    @pytest.mark.asyncio
    async def test_empty_batch_is_not_persisted(self, manager):
        batch_id = await manager.batch("empty").dispatch()
        assert await manager.batches.find(batch_id) is None

    @pytest.mark.asyncio
    async def test_lambda_callback_rejected(self, manager):
        with pytest.raises(CallbackNotSerializableError):
            manager.batch().then(lambda info, stats: None)

    @pytest.mark.asyncio
    async def test_module_function_callback_accepted(self, manager):
        batch = manager.batch().then(on_then)
        assert batch.job_count == 0


class TestBatchProgress:
    @pytest.mark.asyncio
    async def test_progress_derived_from_members(self, manager):
        batch = manager.batch("mixed")
        for value in ("a", "b"):
            batch.add(EchoJob(value=value))
        batch.add(FailingJob(max_attempts=1))
        batch.add(EchoJob(value="d"))
        batch.add(EchoJob(value="e"))
        batch_id = await batch.dispatch()

        for _ in range(3):
            await manager.process_next()

        stats = await manager.batches.stats(batch_id)
        assert stats.completed == 2
        assert stats.failed == 1
        assert stats.queued == 2
        assert stats.progress == 60.0
        assert not await manager.batches.is_finished(batch_id)

    @pytest.mark.asyncio
    async def test_cancel_batch(self, manager, bus):
        batch_id = await (
            manager.batch().add(EchoJob()).add(EchoJob()).add(EchoJob()).dispatch()
        )
        await manager.process_next()

        assert await manager.batches.cancel(batch_id) == 2
        stats = await manager.batches.stats(batch_id)
        assert stats.cancelled == 2
        assert stats.completed == 1
        assert (await manager.batches.find(batch_id)).cancelled_at is not None
        assert len(bus.recent("batch.cancelled")) == 1


class TestBatchFinalize:
    @pytest.mark.asyncio
    async def test_then_and_finally_on_success(self, manager, bus):
        batch_id = await (
            manager.batch("ok")
            .add(EchoJob(value="a"))
            .add(EchoJob(value="b"))
            .then("on_then")
            .catch("on_catch")
            .finally_("on_finally")
            .dispatch()
        )

        assert await manager.batches.finalize(batch_id) is False  # still queued
        await _drain(manager)

        assert await manager.batches.finalize(batch_id) is True
        assert [name for name, _ in CALLBACK_CALLS] == ["then", "finally"]
        info, stats = CALLBACK_CALLS[0][1]
        assert info.id == batch_id
        assert stats.completed == 2
        assert len(bus.recent("batch.finished")) == 1

    @pytest.mark.asyncio
    async def test_finalize_runs_once(self, manager, bus):
        batch_id = await manager.batch().add(EchoJob()).then("on_then").dispatch()
        await _drain(manager)

        assert await manager.batches.finalize(batch_id) is True
        assert await manager.batches.finalize(batch_id) is False
        assert len(CALLBACK_CALLS) == 1
        assert len(bus.recent("batch.finished")) == 1

    @pytest.mark.asyncio
    async def test_catch_on_failure(self, manager):
        batch_id = await (
            manager.batch()
            .add(EchoJob())
            .add(FailingJob(max_attempts=1))
            .then("on_then")
            .catch("on_catch")
            .finally_("on_finally")
            .dispatch()
        )
        await _drain(manager)

        assert await manager.batches.finalize(batch_id) is True
        assert [name for name, _ in CALLBACK_CALLS] == ["catch", "finally"]

    @pytest.mark.asyncio
    async def test_broken_callback_does_not_stop_finally(self, manager):
        batch_id = await (
            manager.batch()
            .add(EchoJob())
            .then("broken")
            .finally_("on_finally")
            .dispatch()
        )
        await _drain(manager)

        assert await manager.batches.finalize(batch_id) is True
        assert [name for name, _ in CALLBACK_CALLS] == ["finally"]

    @pytest.mark.asyncio
    async def test_unknown_batch(self, manager):
        assert await manager.batches.finalize("missing") is False


class TestDontAllowFailures:
    @pytest.mark.asyncio
    async def test_first_failure_cancels_rest(self, manager):
        batch_id = await (
            manager.batch()
            .add(FailingJob(max_attempts=1))
            .add(EchoJob(value="never"))
            .add(EchoJob(value="never"))
            .dont_allow_failures()
            .dispatch()
        )
        await _drain(manager)

        assert "never" not in EXECUTED
        stats = await manager.batches.stats(batch_id)
        assert stats.failed == 1
        assert stats.cancelled == 2

    @pytest.mark.asyncio
    async def test_failures_allowed_by_default(self, manager):
        batch_id = await (
            manager.batch()
            .add(FailingJob(max_attempts=1))
            .add(EchoJob(value="runs"))
            .dispatch()
        )
        await _drain(manager)

        assert EXECUTED[-1] == "runs"
        stats = await manager.batches.stats(batch_id)
        assert stats.failed == 1
        assert stats.completed == 1


class TestBatchListing:
    @pytest.mark.asyncio
    async def test_all_newest_first(self, manager, clock):
        first = await manager.batch("one").add(EchoJob()).dispatch()
        clock.advance(1)
        second = await manager.batch("two").add(EchoJob()).dispatch()
        await _drain(manager)
        await manager.batches.finalize(first)

        batches = await manager.batches.all()
        assert [b.id for b in batches] == [second, first]
