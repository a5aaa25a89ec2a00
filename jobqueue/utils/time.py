"""
UTC clock utilities.

Every timestamp the engine persists is tz-aware UTC. Drivers take the current
time from an injectable clock instead of the database server so both storage
backends agree on availability, backoff and stale cutoffs.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

_UTC = timezone.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a tz-aware UTC datetime."""
    return datetime.now(_UTC)


def ensure_utc(ts: datetime) -> datetime:
    """Validate that a datetime is tz-aware and convert to UTC.

    Args:
        ts: A timezone-aware datetime (any timezone).

    Returns:
        The same instant as a UTC-aware datetime.

    Raises:
        ValueError: If ts is naive (no tzinfo).
    """
    if ts.tzinfo is None:
        raise ValueError(
            "ensure_utc requires a tz-aware datetime, got naive. "
            "Hint: use datetime(..., tzinfo=timezone.utc) for UTC timestamps."
        )
    return ts.astimezone(_UTC)


def to_epoch(ts: Optional[datetime]) -> Optional[float]:
    """Datetime to epoch seconds (None passes through)."""
    if ts is None:
        return None
    return ensure_utc(ts).timestamp()


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    """Epoch seconds to UTC datetime (None passes through)."""
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), _UTC)


def after(ts: datetime, seconds: float) -> datetime:
    """Shift a timestamp forward by a number of seconds."""
    return ts + timedelta(seconds=seconds)
