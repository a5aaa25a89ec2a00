"""Redis-backed event bus for multi-process deployments.

Local handlers are served exactly like InMemoryEventBus. Every event is also
appended to a Redis stream so consumers in other processes (webhook senders,
dashboards) can read it.

Stream entry format:
    XADD <stream_key> MAXLEN ~ <buffer_size> * topic=<topic> timestamp=<iso> payload=<json>
"""

import json
from datetime import datetime
from typing import Optional

import redis.asyncio as redis_async
import structlog
from pydantic import ValidationError

from jobqueue.errors import translate_errors
from jobqueue.services.events.bus import InMemoryEventBus
from jobqueue.services.events.schemas import QueueEvent

logger = structlog.get_logger(__name__)


class RedisEventBus(InMemoryEventBus):
    """In-process fan-out plus a Redis stream for cross-process consumers."""

    def __init__(
        self,
        client: redis_async.Redis,
        stream_key: str = "jobqueue:events",
        buffer_size: int = 1000,
    ):
        """
        Initialize Redis event bus.

        Args:
            client: redis.asyncio client (decode_responses=True)
            stream_key: Stream to append events to
            buffer_size: Local buffer size and stream MAXLEN ~
        """
        super().__init__(buffer_size=buffer_size)
        self._redis = client
        self._stream_key = stream_key
        self._buffer_size = buffer_size

    @property
    def stream_key(self) -> str:
        return self._stream_key

    @translate_errors("redis")
    async def publish(self, event: QueueEvent) -> int:
        """
        Append event to the stream, then deliver to local handlers.

        The stream ID becomes the event ID.
        """
        stream_id = await self._redis.xadd(
            self._stream_key,
            {
                "topic": event.topic,
                "timestamp": event.timestamp.isoformat(),
                "payload": json.dumps(event.payload),
            },
            maxlen=self._buffer_size,
            approximate=True,  # MAXLEN ~ for performance
        )
        event.id = stream_id

        logger.debug(
            "redis_event_published",
            stream_key=self._stream_key,
            stream_id=stream_id,
            topic=event.topic,
        )
        return await super().publish(event)

    @translate_errors("redis")
    async def read_stream(
        self, after_id: str = "0", count: int = 100
    ) -> list[QueueEvent]:
        """
        Read events appended after a stream ID (exclusive).

        Args:
            after_id: Last stream ID seen; "0" reads from the start
            count: Maximum events to return
        """
        start = "-" if after_id in ("0", "0-0", "-") else f"({after_id}"
        messages = await self._redis.xrange(
            self._stream_key, min=start, max="+", count=count
        )
        events = []
        for msg_id, fields in messages:
            event = self._parse_stream_event(msg_id, fields)
            if event is not None:
                events.append(event)
        return events

    def _parse_stream_event(self, stream_id: str, fields: dict) -> Optional[QueueEvent]:
        """Parse Redis stream message into QueueEvent."""
        try:
            return QueueEvent(
                id=stream_id,
                topic=fields["topic"],
                timestamp=datetime.fromisoformat(fields["timestamp"]),
                payload=json.loads(fields.get("payload", "{}")),
            )
        except (KeyError, ValueError, ValidationError) as e:
            logger.warning(
                "redis_event_parse_error",
                stream_id=stream_id,
                error=str(e),
            )
            return None

    async def stream_length(self) -> int:
        return int(await self._redis.xlen(self._stream_key))
