"""Process bootstrap - builds one instance of each queue component.

Producers and workers receive the returned context explicitly; nothing here
is a module-level singleton.
"""

from dataclasses import dataclass, field
from typing import Optional

import asyncpg
import redis.asyncio as redis_async
import structlog

from jobqueue.config import Settings, get_settings
from jobqueue.drivers.base import QueueDriver
from jobqueue.drivers.factory import create_driver, resolve_driver_name
from jobqueue.jobs.registry import CallbackRegistry, JobRegistry
from jobqueue.services.events.bus import EventBus, create_event_bus
from jobqueue.services.manager import QueueManager
from jobqueue.services.scheduler import Scheduler
from jobqueue.stores.base import StateStore
from jobqueue.stores.database import PostgresStateStore
from jobqueue.stores.redis_store import RedisStateStore
from jobqueue.utils.time import Clock

logger = structlog.get_logger(__name__)


@dataclass
class QueueContext:
    """Wired queue components for one process."""

    settings: Settings
    driver: QueueDriver
    store: StateStore
    events: EventBus
    manager: QueueManager
    scheduler: Scheduler
    _owned_pool: Optional[object] = field(default=None, repr=False)
    _owned_redis: Optional[redis_async.Redis] = field(default=None, repr=False)

    async def close(self) -> None:
        """Release connections opened by create_context()."""
        await self.events.close()
        if self._owned_pool is not None:
            await self._owned_pool.close()
        if self._owned_redis is not None:
            await self._owned_redis.aclose()
        logger.info("queue_context_closed", driver=self.driver.name)


async def create_context(
    settings: Optional[Settings] = None,
    *,
    pool=None,
    redis: Optional[redis_async.Redis] = None,
    registry: Optional[JobRegistry] = None,
    callbacks: Optional[CallbackRegistry] = None,
    worker_id: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> QueueContext:
    """
    Build driver, state store, event bus, manager and scheduler from settings.

    Args:
        settings: Defaults to get_settings()
        pool: Existing asyncpg pool to reuse (not closed by the context)
        redis: Existing redis.asyncio client to reuse (not closed by the context)
        registry: Job registry, defaults to the process-wide one
        callbacks: Callback registry, defaults to the process-wide one
        worker_id: Recorded on claimed jobs
        clock: UTC clock override

    Raises:
        ValueError: Unknown driver, or the database driver without DATABASE_URL
    """
    settings = settings or get_settings()
    driver_name = resolve_driver_name(settings.queue_driver)

    owned_pool = None
    owned_redis = None

    if driver_name == "database" and pool is None:
        if not settings.database_url:
            raise ValueError("DATABASE_URL is required for the database queue driver")
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=30,
            statement_cache_size=0,  # Disable for pgbouncer transaction mode
        )
        owned_pool = pool

    needs_redis = driver_name == "redis" or settings.event_bus_mode == "redis"
    if needs_redis and redis is None:
        redis = redis_async.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5.0,
            socket_keepalive=True,
        )
        owned_redis = redis

    driver = await create_driver(settings, pool=pool, redis=redis, clock=clock)
    store: StateStore
    if driver_name == "redis":
        store = RedisStateStore(redis, prefix=settings.redis_prefix)
    else:
        store = PostgresStateStore(pool, clock=clock)

    events = create_event_bus(
        settings.event_bus_mode,
        buffer_size=settings.event_bus_buffer_size,
        redis=redis,
        stream_key=f"{settings.redis_prefix}events",
    )

    manager = QueueManager(
        driver,
        store,
        registry=registry,
        callbacks=callbacks,
        events_bus=events,
        default_queue=settings.default_queue,
        unique_lock_ttl=settings.unique_lock_ttl_seconds,
        worker_id=worker_id,
        clock=clock,
    )
    scheduler = Scheduler(manager)

    logger.info(
        "queue_context_created",
        driver=driver.name,
        event_bus=settings.event_bus_mode,
        default_queue=settings.default_queue,
    )
    return QueueContext(
        settings=settings,
        driver=driver,
        store=store,
        events=events,
        manager=manager,
        scheduler=scheduler,
        _owned_pool=owned_pool,
        _owned_redis=owned_redis,
    )
