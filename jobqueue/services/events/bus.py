"""Event bus for queue notifications.

Provides an abstract observer interface with an in-memory implementation.
The engine publishes; an outer layer (webhooks, audit logging) subscribes.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional, Set, Union

import structlog

from jobqueue.services.events.schemas import (
    ALL_TOPICS,
    BATCH_TOPICS,
    CHAIN_TOPICS,
    JOB_TOPICS,
    QueueEvent,
)

logger = structlog.get_logger(__name__)

# Handlers may be plain functions or coroutines
EventHandler = Callable[[QueueEvent], Union[None, Awaitable[None]]]


class EventBus(ABC):
    """
    Abstract interface for event distribution.

    Implementations: InMemoryEventBus (same process),
    RedisEventBus (also appends to a Redis stream for other processes).
    """

    @abstractmethod
    def subscribe(self, topics: Union[str, Iterable[str]], handler: EventHandler) -> str:
        """
        Register a handler.

        Args:
            topics: Topic names, categories ("job", "batch", "chain") or "*"
            handler: Called with each matching event

        Returns:
            Subscription ID for unsubscribe().
        """
        ...

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a handler. Returns whether it was registered."""
        ...

    @abstractmethod
    async def publish(self, event: QueueEvent) -> int:
        """
        Publish an event to all matching handlers.

        Handler errors are logged, never raised to the publisher.

        Returns:
            Number of handlers that received the event without error.
        """
        ...

    @abstractmethod
    def subscriber_count(self) -> int:
        """Return current number of handlers."""
        ...

    async def close(self) -> None:
        return None


def _expand_topics(topics: Union[str, Iterable[str]]) -> Set[str]:
    """
    Expand category names to specific topics.

    Args:
        topics: Category names ("job", "batch", "chain", "*") or specific
                topics ("job.failed")

    Returns:
        Set of specific topic names.
    """
    if isinstance(topics, str):
        topics = [topics]
    result: Set[str] = set()
    for topic in topics:
        if topic == "*":
            result.update(ALL_TOPICS)
        elif topic == "job":
            result.update(JOB_TOPICS)
        elif topic == "batch":
            result.update(BATCH_TOPICS)
        elif topic == "chain":
            result.update(CHAIN_TOPICS)
        else:
            result.add(topic)
    return result


class InMemoryEventBus(EventBus):
    """
    In-process event bus.

    Features:
    - Topic and category subscription
    - Sync and async handlers
    - Bounded buffer of recent events for inspection

    Limitations:
    - Events only reach handlers in the same process
    """

    def __init__(self, buffer_size: int = 1000):
        """
        Initialize the event bus.

        Args:
            buffer_size: Maximum recent events to keep
        """
        self._handlers: dict[str, tuple[Set[str], EventHandler]] = {}
        self._event_buffer: deque[QueueEvent] = deque(maxlen=buffer_size)
        self._event_counter: int = 0
        self._subscription_counter: int = 0
        self._lock = asyncio.Lock()

    def _generate_event_id(self) -> str:
        """Generate monotonic event ID."""
        self._event_counter += 1
        return f"evt-{self._event_counter}"

    def subscribe(self, topics: Union[str, Iterable[str]], handler: EventHandler) -> str:
        self._subscription_counter += 1
        subscription_id = f"sub-{self._subscription_counter}"
        expanded = _expand_topics(topics)
        self._handlers[subscription_id] = (expanded, handler)
        logger.debug(
            "event_subscriber_added",
            subscription_id=subscription_id,
            topics=sorted(expanded),
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._handlers.pop(subscription_id, None) is not None

    async def publish(self, event: QueueEvent) -> int:
        # Assign event ID if not set
        if not event.id:
            event.id = self._generate_event_id()

        async with self._lock:
            self._event_buffer.append(event)

        return await self._deliver(event)

    async def _deliver(self, event: QueueEvent) -> int:
        count = 0
        for sub_id, (topics, handler) in list(self._handlers.items()):
            if event.topic not in topics:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                count += 1
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    topic=event.topic,
                    error=str(e),
                )

        if count > 0:
            logger.debug(
                "event_published",
                event_id=event.id,
                topic=event.topic,
                subscriber_count=count,
            )
        return count

    def subscriber_count(self) -> int:
        return len(self._handlers)

    def recent(self, topic: Optional[str] = None, limit: int = 100) -> list[QueueEvent]:
        """Most recent buffered events, oldest first."""
        events = [e for e in self._event_buffer if topic is None or e.topic == topic]
        return events[-limit:]

    def buffer_size(self) -> int:
        """Return current event buffer size."""
        return len(self._event_buffer)


def create_event_bus(
    mode: str = "memory",
    buffer_size: int = 1000,
    redis: Any = None,
    stream_key: str = "jobqueue:events",
) -> EventBus:
    """
    Build the configured event bus.

    Args:
        mode: "memory" or "redis"
        buffer_size: Recent-event buffer size, also the stream MAXLEN
        redis: redis.asyncio client, required for mode="redis"
        stream_key: Redis stream key

    Raises:
        ValueError: If mode is unknown or redis mode has no client
    """
    if mode == "memory":
        return InMemoryEventBus(buffer_size=buffer_size)
    if mode == "redis":
        if redis is None:
            raise ValueError("event_bus_mode=redis requires a Redis client")
        from jobqueue.services.events.redis_bus import RedisEventBus

        return RedisEventBus(redis, stream_key=stream_key, buffer_size=buffer_size)
    raise ValueError(f"Unknown event bus mode: {mode!r}")
