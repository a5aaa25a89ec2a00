"""Queue event notifications."""

from jobqueue.services.events.bus import (
    EventBus,
    InMemoryEventBus,
    create_event_bus,
)
from jobqueue.services.events.redis_bus import RedisEventBus
from jobqueue.services.events.schemas import QueueEvent

__all__ = [
    "EventBus",
    "InMemoryEventBus",
    "RedisEventBus",
    "QueueEvent",
    "create_event_bus",
]
