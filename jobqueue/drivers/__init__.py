"""Storage drivers."""

from jobqueue.drivers.base import QueueDriver, calculate_backoff
from jobqueue.drivers.database import DatabaseDriver
from jobqueue.drivers.factory import create_driver
from jobqueue.drivers.redis_driver import RedisDriver

__all__ = [
    "QueueDriver",
    "DatabaseDriver",
    "RedisDriver",
    "create_driver",
    "calculate_backoff",
]
