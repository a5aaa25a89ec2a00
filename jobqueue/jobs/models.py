"""Job system data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from jobqueue.jobs.types import ChainStatus, JobStatus, Priority
from jobqueue.utils.time import from_epoch, to_epoch, utc_now


@dataclass
class JobData:
    """Everything a driver needs to persist a new job."""

    job_type: str
    payload: str
    queue: str = "default"
    priority: Priority = Priority.NORMAL
    max_attempts: int = 3
    delay_seconds: float = 0

    # Grouping
    batch_id: Optional[str] = None
    chain_id: Optional[str] = None
    chain_position: Optional[int] = None

    # Admission
    unique_key: Optional[str] = None
    rate_limit: Optional[dict[str, Any]] = None


@dataclass
class JobRecord:
    """A job as persisted by a storage driver."""

    id: int
    job_type: str
    payload: str
    queue: str
    priority: Priority
    status: JobStatus

    # Retry handling
    attempts: int = 0
    max_attempts: int = 3
    available_at: datetime = field(default_factory=utc_now)
    error_message: Optional[str] = None

    # Claim info
    reserved_at: Optional[datetime] = None
    worker_id: Optional[str] = None

    # Relationships
    batch_id: Optional[str] = None
    chain_id: Optional[str] = None
    chain_position: Optional[int] = None
    unique_key: Optional[str] = None
    rate_limit: Optional[dict[str, Any]] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (ISO timestamps, enum values)."""
        data = asdict(self)
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        for key in ("available_at", "reserved_at", "created_at", "updated_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data


@dataclass
class BatchStats:
    """Aggregate member-job counts of a batch."""

    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.completed + self.failed + self.cancelled

    @property
    def progress(self) -> float:
        """Finished share in percent, one decimal. Empty batches report 0."""
        total = self.total
        if total == 0:
            return 0.0
        return round((self.completed + self.failed) / total * 100, 1)

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> "BatchStats":
        return cls(
            queued=int(counts.get(JobStatus.QUEUED.value, 0)),
            running=int(counts.get(JobStatus.RUNNING.value, 0)),
            completed=int(counts.get(JobStatus.COMPLETED.value, 0)),
            failed=int(counts.get(JobStatus.FAILED.value, 0)),
            cancelled=int(counts.get(JobStatus.CANCELLED.value, 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total"] = self.total
        data["progress"] = self.progress
        return data


@dataclass
class BatchInfo:
    """Persisted batch metadata. Member status is derived, never stored here."""

    id: str
    name: str
    queue: str
    total_jobs: int
    created_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    allow_failures: bool = True
    callbacks: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queue": self.queue,
            "total_jobs": self.total_jobs,
            "created_at": to_epoch(self.created_at),
            "finished_at": to_epoch(self.finished_at),
            "cancelled_at": to_epoch(self.cancelled_at),
            "allow_failures": self.allow_failures,
            "callbacks": dict(self.callbacks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchInfo":
        return cls(
            id=data["id"],
            name=data["name"],
            queue=data["queue"],
            total_jobs=int(data["total_jobs"]),
            created_at=from_epoch(data["created_at"]) or utc_now(),
            finished_at=from_epoch(data.get("finished_at")),
            cancelled_at=from_epoch(data.get("cancelled_at")),
            allow_failures=bool(data.get("allow_failures", True)),
            callbacks=dict(data.get("callbacks") or {}),
        )


@dataclass
class ChainState:
    """Persisted chain record. Authoritative, since only one step exists at a time."""

    id: str
    name: str
    queue: str
    jobs: list[str]  # serialized payloads, in order
    current_index: int = 0
    status: ChainStatus = ChainStatus.RUNNING
    created_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    callbacks: dict[str, str] = field(default_factory=dict)

    @property
    def total_jobs(self) -> int:
        return len(self.jobs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queue": self.queue,
            "jobs": list(self.jobs),
            "current_index": self.current_index,
            "status": self.status.value,
            "created_at": to_epoch(self.created_at),
            "finished_at": to_epoch(self.finished_at),
            "error": self.error,
            "callbacks": dict(self.callbacks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainState":
        return cls(
            id=data["id"],
            name=data["name"],
            queue=data["queue"],
            jobs=list(data.get("jobs") or []),
            current_index=int(data.get("current_index", 0)),
            status=ChainStatus(data.get("status", ChainStatus.RUNNING.value)),
            created_at=from_epoch(data["created_at"]) or utc_now(),
            finished_at=from_epoch(data.get("finished_at")),
            error=data.get("error"),
            callbacks=dict(data.get("callbacks") or {}),
        )


@dataclass
class Schedule:
    """A recurring job registration."""

    name: str
    interval: str
    interval_seconds: int
    payload: str  # serialized job template
    queue: str
    next_run: datetime
    last_run: Optional[datetime] = None
    enabled: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval": self.interval,
            "interval_seconds": self.interval_seconds,
            "payload": self.payload,
            "queue": self.queue,
            "next_run": to_epoch(self.next_run),
            "last_run": to_epoch(self.last_run),
            "enabled": self.enabled,
            "created_at": to_epoch(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Schedule":
        return cls(
            name=data["name"],
            interval=str(data["interval"]),
            interval_seconds=int(data["interval_seconds"]),
            payload=data["payload"],
            queue=data["queue"],
            next_run=from_epoch(data["next_run"]) or utc_now(),
            last_run=from_epoch(data.get("last_run")),
            enabled=bool(data.get("enabled", True)),
            created_at=from_epoch(data.get("created_at")) or utc_now(),
        )
