"""Job system type definitions."""

from enum import Enum


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class Priority(str, Enum):
    """Claim priority. High drains before normal, normal before low."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def ordered(cls) -> list["Priority"]:
        """Priorities in claim order."""
        return [cls.HIGH, cls.NORMAL, cls.LOW]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class ChainStatus(str, Enum):
    """Chain lifecycle statuses."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
