"""TTL-backed keyed state stores."""

from jobqueue.stores.base import StateStore
from jobqueue.stores.database import PostgresStateStore
from jobqueue.stores.redis_store import RedisStateStore

__all__ = ["StateStore", "PostgresStateStore", "RedisStateStore"]
