"""Redis-backed state store (SET EX/NX, SCAN)."""

import json
import math
from typing import Any, Optional

import redis.asyncio as redis_async

from jobqueue.errors import translate_errors
from jobqueue.stores.base import StateStore


def _glob_escape(text: str) -> str:
    return "".join("\\" + ch if ch in "*?[]\\" else ch for ch in text)


def _ttl_seconds(ttl: Optional[float]) -> Optional[int]:
    if ttl is None:
        return None
    return max(1, math.ceil(ttl))


class RedisStateStore(StateStore):
    """State entries as JSON strings under {prefix}state:."""

    def __init__(
        self,
        client: redis_async.Redis,
        prefix: str = "jobqueue:",
        owns_client: bool = False,
    ):
        self._redis = client
        self._namespace = f"{prefix}state:"
        self._owns_client = owns_client

    def _key(self, key: str) -> str:
        return self._namespace + key

    @translate_errors("redis")
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self._redis.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    @translate_errors("redis")
    async def set(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> None:
        await self._redis.set(self._key(key), json.dumps(value), ex=_ttl_seconds(ttl))

    @translate_errors("redis")
    async def add(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> bool:
        stored = await self._redis.set(
            self._key(key), json.dumps(value), ex=_ttl_seconds(ttl), nx=True
        )
        return bool(stored)

    @translate_errors("redis")
    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(self._key(key)))

    @translate_errors("redis")
    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        pattern = _glob_escape(self._key(prefix)) + "*"
        keys = sorted([k async for k in self._redis.scan_iter(match=pattern, count=200)])
        if not keys:
            return []
        raws = await self._redis.mget(keys)
        start = len(self._namespace)
        return [
            (k[start:], json.loads(raw)) for k, raw in zip(keys, raws) if raw is not None
        ]

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()
