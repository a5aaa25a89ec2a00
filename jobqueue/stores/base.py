"""Keyed state store contract.

Backs everything that is not a job record: rate-limit windows, unique locks,
batch metadata, chain state and schedules. Entries may carry a TTL; an expired
entry is indistinguishable from a missing one.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class StateStore(ABC):
    """Abstract interface for TTL-backed JSON state."""

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        """Get a live entry, or None."""
        ...

    @abstractmethod
    async def set(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> None:
        """Store an entry, replacing any existing one. ttl is in seconds."""
        ...

    @abstractmethod
    async def add(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> bool:
        """
        Store an entry only if no live entry exists.

        Returns:
            True if stored, False if the key was already held.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove an entry. Returns whether anything was removed."""
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        """All live entries whose key starts with prefix, ordered by key."""
        ...

    async def purge_expired(self) -> int:
        """Drop expired entries the backend does not evict by itself."""
        return 0

    async def close(self) -> None:
        return None
