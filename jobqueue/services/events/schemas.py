"""Event schemas for queue notifications."""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from jobqueue.jobs.models import JobRecord

# Event topics
EventTopic = Literal[
    # Job events
    "job.queued",
    "job.completed",
    "job.failed",
    "job.retrying",
    "job.cancelled",
    "job.rate_limited",
    "job.duplicate",
    "jobs.stale_released",
    # Batch events
    "batch.dispatched",
    "batch.cancelled",
    "batch.finished",
    # Chain events
    "chain.started",
    "chain.completed",
    "chain.failed",
]

# Topic categories for filtering
JOB_TOPICS = {
    "job.queued",
    "job.completed",
    "job.failed",
    "job.retrying",
    "job.cancelled",
    "job.rate_limited",
    "job.duplicate",
    "jobs.stale_released",
}
BATCH_TOPICS = {"batch.dispatched", "batch.cancelled", "batch.finished"}
CHAIN_TOPICS = {"chain.started", "chain.completed", "chain.failed"}
ALL_TOPICS = JOB_TOPICS | BATCH_TOPICS | CHAIN_TOPICS


class QueueEvent(BaseModel):
    """
    A discrete, named queue notification.

    Consumed by whatever sits outside the engine (webhooks, audit logging,
    dashboards). The payload carries IDs and error detail, never job data.
    """

    id: str = Field(default="", description="Event ID, assigned on publish")
    topic: EventTopic = Field(..., description="Event topic (e.g., 'job.failed')")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Event timestamp (UTC)",
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")


def _job_payload(job: JobRecord) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "job_type": job.job_type,
        "queue": job.queue,
        "attempts": job.attempts,
        "batch_id": job.batch_id,
        "chain_id": job.chain_id,
    }


# Convenience constructors for common events


def job_queued(
    job_id: int,
    job_type: str,
    queue: str,
    delay: float = 0,
    batch_id: Optional[str] = None,
    chain_id: Optional[str] = None,
) -> QueueEvent:
    """Create a job.queued event."""
    return QueueEvent(
        topic="job.queued",
        payload={
            "job_id": job_id,
            "job_type": job_type,
            "queue": queue,
            "delay": delay,
            "batch_id": batch_id,
            "chain_id": chain_id,
        },
    )


def job_completed(job: JobRecord) -> QueueEvent:
    """Create a job.completed event."""
    return QueueEvent(topic="job.completed", payload=_job_payload(job))


def job_failed(job: JobRecord, attempts: int, error: str) -> QueueEvent:
    """Create a job.failed event (permanent failure)."""
    payload = _job_payload(job)
    payload.update(attempts=attempts, error=error)
    return QueueEvent(topic="job.failed", payload=payload)


def job_retrying(job: JobRecord, attempts: int, delay: int, error: str) -> QueueEvent:
    """Create a job.retrying event."""
    payload = _job_payload(job)
    payload.update(attempts=attempts, delay=delay, error=error)
    return QueueEvent(topic="job.retrying", payload=payload)


def job_cancelled(job_id: int) -> QueueEvent:
    """Create a job.cancelled event."""
    return QueueEvent(topic="job.cancelled", payload={"job_id": job_id})


def job_rate_limited(job: JobRecord, key: str, available_in: int) -> QueueEvent:
    """Create a job.rate_limited event."""
    payload = _job_payload(job)
    payload.update(rate_limit_key=key, available_in=available_in)
    return QueueEvent(topic="job.rate_limited", payload=payload)


def job_duplicate(job_type: str, unique_key: str) -> QueueEvent:
    """Create a job.duplicate event (dispatch blocked by a unique lock)."""
    return QueueEvent(
        topic="job.duplicate",
        payload={"job_type": job_type, "unique_key": unique_key},
    )


def stale_released(count: int, timeout_minutes: int) -> QueueEvent:
    """Create a jobs.stale_released event."""
    return QueueEvent(
        topic="jobs.stale_released",
        payload={"count": count, "timeout_minutes": timeout_minutes},
    )


def batch_dispatched(batch_id: str, name: str, job_ids: list[int]) -> QueueEvent:
    """Create a batch.dispatched event."""
    return QueueEvent(
        topic="batch.dispatched",
        payload={"batch_id": batch_id, "name": name, "job_ids": job_ids},
    )


def batch_cancelled(batch_id: str, cancelled: int) -> QueueEvent:
    """Create a batch.cancelled event."""
    return QueueEvent(
        topic="batch.cancelled",
        payload={"batch_id": batch_id, "cancelled": cancelled},
    )


def batch_finished(batch_id: str, stats: dict[str, Any]) -> QueueEvent:
    """Create a batch.finished event."""
    return QueueEvent(
        topic="batch.finished", payload={"batch_id": batch_id, "stats": stats}
    )


def chain_started(chain_id: str, name: str, total_jobs: int) -> QueueEvent:
    """Create a chain.started event."""
    return QueueEvent(
        topic="chain.started",
        payload={"chain_id": chain_id, "name": name, "total_jobs": total_jobs},
    )


def chain_completed(chain_id: str, name: str) -> QueueEvent:
    """Create a chain.completed event."""
    return QueueEvent(
        topic="chain.completed", payload={"chain_id": chain_id, "name": name}
    )


def chain_failed(chain_id: str, name: str, error: str, position: int) -> QueueEvent:
    """Create a chain.failed event."""
    return QueueEvent(
        topic="chain.failed",
        payload={
            "chain_id": chain_id,
            "name": name,
            "error": error,
            "position": position,
        },
    )
