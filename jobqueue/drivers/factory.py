"""Driver selection from settings."""

from typing import Optional

import redis.asyncio as redis_async

from jobqueue.config import Settings
from jobqueue.drivers.base import QueueDriver
from jobqueue.drivers.database import DatabaseDriver
from jobqueue.drivers.redis_driver import RedisDriver
from jobqueue.utils.time import Clock

DRIVER_ALIASES = {
    "database": "database",
    "postgres": "database",
    "postgresql": "database",
    "redis": "redis",
}


def resolve_driver_name(name: str) -> str:
    """Canonical driver name. Raises ValueError for unknown drivers."""
    try:
        return DRIVER_ALIASES[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown queue driver {name!r}; expected one of: "
            f"{', '.join(sorted(DRIVER_ALIASES))}"
        ) from None


async def create_driver(
    settings: Settings,
    *,
    pool=None,
    redis: Optional[redis_async.Redis] = None,
    clock: Optional[Clock] = None,
) -> QueueDriver:
    """Build the configured driver.

    An explicitly passed pool or client is reused and left open on close();
    otherwise the driver opens its own from the configured URL.
    """
    name = resolve_driver_name(settings.queue_driver)

    if name == "redis":
        if redis is not None:
            return RedisDriver(redis, prefix=settings.redis_prefix, clock=clock)
        return RedisDriver.from_url(
            settings.redis_url, prefix=settings.redis_prefix, clock=clock
        )

    if pool is not None:
        return DatabaseDriver(pool, clock=clock)
    if not settings.database_url:
        raise ValueError("DATABASE_URL is required for the database queue driver")
    return await DatabaseDriver.connect(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        clock=clock,
    )
