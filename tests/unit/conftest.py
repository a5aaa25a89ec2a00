"""Fixtures for unit tests.

Redis-backed components run against fakeredis; nothing here needs a server.
"""

import fakeredis
import pytest

from jobqueue.drivers.redis_driver import RedisDriver
from jobqueue.jobs.registry import CallbackRegistry, JobRegistry
from jobqueue.services.events.bus import InMemoryEventBus
from jobqueue.services.manager import QueueManager
from jobqueue.stores.redis_store import RedisStateStore

from queue_helpers import (
    EchoJob,
    FailingJob,
    FrozenClock,
    HookedJob,
    SyncEchoJob,
    broken_callback,
    on_catch,
    on_finally,
    on_then,
    reset_recorders,
)


@pytest.fixture(autouse=True)
def _reset_recorders():
    reset_recorders()
    yield
    reset_recorders()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def registry():
    reg = JobRegistry()
    reg.register(EchoJob, "echo")
    reg.register(SyncEchoJob, "sync_echo")
    reg.register(FailingJob, "failing")
    reg.register(HookedJob, "hooked")
    return reg


@pytest.fixture
def callbacks():
    reg = CallbackRegistry()
    reg.register("on_then", on_then)
    reg.register("on_catch", on_catch)
    reg.register("on_finally", on_finally)
    reg.register("broken", broken_callback)
    return reg


@pytest.fixture
def store(redis_client):
    return RedisStateStore(redis_client, prefix="test:")


@pytest.fixture
def driver(redis_client, clock):
    return RedisDriver(redis_client, prefix="test:", clock=clock)


@pytest.fixture
def bus():
    return InMemoryEventBus(buffer_size=500)


@pytest.fixture
def manager(driver, store, registry, callbacks, bus, clock):
    return QueueManager(
        driver,
        store,
        registry=registry,
        callbacks=callbacks,
        events_bus=bus,
        worker_id="test-host:1",
        clock=clock,
    )
