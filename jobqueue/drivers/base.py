"""Storage driver contract.

Every backend implements the same capability set. Claim ordering, the backoff
formula and stale-timeout semantics must be identical across implementations
even though the data structures underneath differ.
"""

from abc import ABC, abstractmethod
from typing import Optional

from jobqueue.jobs.models import BatchStats, JobData, JobRecord
from jobqueue.jobs.types import JobStatus
from jobqueue.utils.time import Clock, utc_now

STATUSES = [s.value for s in JobStatus]

STALE_FINAL_ERROR = "Job timeout - exceeded {minutes} minutes"
STALE_RETRY_ERROR = "Job timeout - will retry"


def calculate_backoff(attempts: int) -> int:
    """Retry delay in seconds after the given number of attempts: 2^attempts * 60."""
    return (2**attempts) * 60


def empty_counts() -> dict[str, int]:
    """Zero-filled per-status counts."""
    return {status: 0 for status in STATUSES}


class QueueDriver(ABC):
    """
    Abstract interface for job persistence.

    Implementations: DatabaseDriver (PostgreSQL), RedisDriver.

    State transitions are conditional. A call whose precondition does not hold
    (job missing, or not in the expected status) returns False instead of
    raising. Backend failures raise DriverError.
    """

    name: str = "abstract"

    def __init__(self, clock: Optional[Clock] = None):
        self._clock: Clock = clock or utc_now

    def now(self):
        return self._clock()

    @abstractmethod
    async def push(self, job: JobData) -> int:
        """
        Persist a new job as queued.

        Args:
            job: Job data; delay_seconds > 0 defers availability

        Returns:
            The new job ID.
        """
        ...

    @abstractmethod
    async def claim(
        self, queue: str, worker_id: Optional[str] = None
    ) -> Optional[JobRecord]:
        """
        Atomically move the next eligible job from queued to running.

        Eligible means status=queued and available_at <= now. Order is
        priority (high, normal, low), then creation order.

        Returns:
            The claimed job, or None when nothing is eligible or another
            worker won the race for the candidate.
        """
        ...

    @abstractmethod
    async def complete(self, job_id: int) -> bool:
        """Mark a running job completed."""
        ...

    @abstractmethod
    async def fail(
        self, job_id: int, error: str, attempts: int, is_final: bool = True
    ) -> bool:
        """
        Record a failed attempt.

        Applies only to a running job. Final failures move it to failed;
        non-final ones re-queue it immediately.
        """
        ...

    @abstractmethod
    async def release(
        self,
        job_id: int,
        delay_seconds: float = 0,
        attempts: Optional[int] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Return a running job to the queue, available after delay_seconds.

        attempts=None leaves the attempt count unchanged.
        """
        ...

    @abstractmethod
    async def cancel(self, job_id: int) -> bool:
        """Cancel a queued job. Running jobs cannot be cancelled."""
        ...

    @abstractmethod
    async def find(self, job_id: int) -> Optional[JobRecord]:
        """Get a job by ID."""
        ...

    @abstractmethod
    async def release_stale(self, timeout_minutes: int) -> int:
        """
        Recover jobs running longer than the timeout.

        Each stale job gets attempts+1, then is re-queued with backoff or
        failed when attempts reach max_attempts. Status and claim time are
        re-checked before each mutation, so concurrent or repeated calls never
        penalize a job twice.

        Returns:
            Number of jobs recovered.
        """
        ...

    @abstractmethod
    async def cleanup(self, days: int = 7, include_failed: bool = False) -> int:
        """Delete completed/cancelled (and optionally failed) jobs older than days."""
        ...

    @abstractmethod
    async def flush_failed(self, older_than_days: Optional[int] = None) -> int:
        """Delete failed jobs, optionally only those older than N days."""
        ...

    @abstractmethod
    async def retry_failed(
        self, queue: Optional[str] = None, limit: Optional[int] = None
    ) -> int:
        """Reset failed jobs to queued with attempts=0, oldest first."""
        ...

    @abstractmethod
    async def stats(self, queue: Optional[str] = None) -> dict[str, int]:
        """Per-status job counts, zero-filled."""
        ...

    @abstractmethod
    async def get_jobs(
        self,
        status: Optional[str] = None,
        queue: Optional[str] = None,
        batch_id: Optional[str] = None,
        chain_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobRecord]:
        """List jobs newest first."""
        ...

    @abstractmethod
    async def get_queues(self) -> dict[str, dict[str, int]]:
        """Per-queue, per-status counts."""
        ...

    @abstractmethod
    async def batch_stats(self, batch_id: str) -> BatchStats:
        """Member-job counts for a batch."""
        ...

    @abstractmethod
    async def cancel_batch(self, batch_id: str) -> int:
        """Cancel every queued member of a batch. Returns count cancelled."""
        ...

    @abstractmethod
    async def is_connected(self) -> bool:
        """Check whether the backend answers."""
        ...

    async def close(self) -> None:
        """Release backend resources owned by the driver."""
        return None
