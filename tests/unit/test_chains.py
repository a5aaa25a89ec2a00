"""Tests for sequential chain execution."""

import pytest

from jobqueue.jobs.types import ChainStatus, JobStatus

from queue_helpers import CALLBACK_CALLS, EXECUTED, EchoJob, FailingJob


async def _drain(manager):
    while await manager.process_next():
        pass


class TestChainDispatch:
    @pytest.mark.asyncio
    async def test_only_first_step_is_queued(self, manager, bus):
        chain_id = await (
            manager.chain("steps")
            .add(EchoJob(value="a"))
            .add(EchoJob(value="b"))
            .add(EchoJob(value="c"))
            .dispatch()
        )

        jobs = await manager.get_jobs(chain_id=chain_id)
        assert len(jobs) == 1
        assert jobs[0].chain_position == 0
        state = await manager.chains.find(chain_id)
        assert state.total_jobs == 3
        assert state.current_index == 0
        assert state.status == ChainStatus.RUNNING
        assert len(bus.recent("chain.started")) == 1

    @pytest.mark.asyncio
    async def test_pipe_skips_non_jobs(self, manager):
        chain = manager.chain().pipe([EchoJob(), None, EchoJob()])
        assert chain.job_count == 2

    @pytest.mark.asyncio
    async def test_empty_chain(self, manager):
        chain_id = await manager.chain().dispatch()
        assert await manager.chains.find(chain_id) is None

    @pytest.mark.asyncio
    async def test_on_queue(self, manager):
        chain_id = await manager.chain().add(EchoJob()).on_queue("ordered").dispatch()
        assert (await manager.get_jobs(chain_id=chain_id))[0].queue == "ordered"


class TestChainExecution:
    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, manager, bus):
        chain_id = await (
            manager.chain("steps")
            .add(EchoJob(value="a"))
            .add(EchoJob(value="b"))
            .add(EchoJob(value="c"))
            .then("on_then")
            .dispatch()
        )

        assert await manager.process_next() is True
        assert EXECUTED == ["a"]
        assert (await manager.chains.find(chain_id)).current_index == 1

        await _drain(manager)
        assert EXECUTED == ["a", "b", "c"]

        state = await manager.chains.find(chain_id)
        assert state.status == ChainStatus.COMPLETED
        assert state.finished_at is not None
        assert [name for name, _ in CALLBACK_CALLS] == ["then"]
        assert len(bus.recent("chain.completed")) == 1

    @pytest.mark.asyncio
    async def test_failed_step_stops_chain(self, manager, bus):
        chain_id = await (
            manager.chain()
            .add(EchoJob(value="a"))
            .add(FailingJob(message="step broke", max_attempts=1))
            .add(EchoJob(value="c"))
            .then("on_then")
            .catch("on_catch")
            .dispatch()
        )
        await _drain(manager)

        assert EXECUTED == ["a", "fail:step broke"]
        state = await manager.chains.find(chain_id)
        assert state.status == ChainStatus.FAILED
        assert state.error == "step broke"

        assert [name for name, _ in CALLBACK_CALLS] == ["catch"]
        _, (failed_state, error) = CALLBACK_CALLS[0]
        assert failed_state.id == chain_id
        assert error == "step broke"

        failed = bus.recent("chain.failed")
        assert len(failed) == 1
        assert failed[0].payload["position"] == 1

    @pytest.mark.asyncio
    async def test_retrying_step_does_not_advance(self, manager):
        chain_id = await (
            manager.chain()
            .add(FailingJob(max_attempts=2))
            .add(EchoJob(value="next"))
            .dispatch()
        )
        await manager.process_next()

        state = await manager.chains.find(chain_id)
        assert state.status == ChainStatus.RUNNING
        assert state.current_index == 0
        assert len(await manager.get_jobs(chain_id=chain_id)) == 1

    @pytest.mark.asyncio
    async def test_repeated_completion_is_ignored(self, manager):
        chain_id = await (
            manager.chain().add(EchoJob(value="a")).add(EchoJob(value="b")).dispatch()
        )
        await manager.process_next()

        # Completion of step 0 reported again after the chain moved on
        await manager.chains.process_next(chain_id, 0)

        jobs = await manager.get_jobs(chain_id=chain_id)
        assert len(jobs) == 2
        assert (await manager.chains.find(chain_id)).current_index == 1

    @pytest.mark.asyncio
    async def test_deleted_chain_is_noop(self, manager):
        chain_id = await (
            manager.chain().add(EchoJob(value="a")).add(EchoJob(value="b")).dispatch()
        )
        assert await manager.chains.delete(chain_id) is True

        await _drain(manager)
        assert EXECUTED == ["a"]

    @pytest.mark.asyncio
    async def test_invalid_stored_step_fails_chain(self, manager):
        chain_id = await (
            manager.chain().add(EchoJob(value="a")).add(EchoJob(value="b")).dispatch()
        )
        state = await manager.chains.find(chain_id)
        state.jobs[1] = '{"job": "vanished", "data": {}}'
        await manager.chains.save(state)

        await _drain(manager)
        state = await manager.chains.find(chain_id)
        assert state.status == ChainStatus.FAILED
        assert "Chain step 1 invalid" in state.error

    @pytest.mark.asyncio
    async def test_duplicate_blocked_step_fails_chain(self, manager, bus):
        # Same unique key held by a job waiting on another queue
        await manager.dispatch(EchoJob(value="other", unique_key="k"), queue="other")
        chain_id = await (
            manager.chain()
            .add(EchoJob(value="a"))
            .add(EchoJob(value="b", unique_key="k"))
            .catch("on_catch")
            .dispatch()
        )

        await _drain(manager)
        assert EXECUTED == ["a"]
        state = await manager.chains.find(chain_id)
        assert state.status == ChainStatus.FAILED
        assert state.error == "Chain step 1 duplicate blocked"
        assert [name for name, _ in CALLBACK_CALLS] == ["catch"]
        assert bus.recent("chain.failed")[0].payload["position"] == 1

    @pytest.mark.asyncio
    async def test_all_lists_chains(self, manager, clock):
        first = await manager.chain("one").add(EchoJob()).dispatch()
        clock.advance(1)
        second = await manager.chain("two").add(EchoJob()).dispatch()

        chains = await manager.chains.all()
        assert [c.id for c in chains] == [second, first]

    @pytest.mark.asyncio
    async def test_step_jobs_complete(self, manager):
        chain_id = await manager.chain().add(EchoJob()).add(EchoJob()).dispatch()
        await _drain(manager)
        jobs = await manager.get_jobs(chain_id=chain_id)
        assert {j.status for j in jobs} == {JobStatus.COMPLETED}
