"""Base class for queueable jobs."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.jobs.types import Priority


class RateLimit(BaseModel):
    """Sliding-window admission descriptor carried by a job.

    Without an explicit key the limiter keys on the job type.
    """

    key: Optional[str] = None
    max: int = Field(default=60, ge=1)
    window_seconds: int = Field(default=60, ge=1)


class Job(BaseModel):
    """A unit of work.

    Subclasses declare their data as pydantic fields and implement handle().
    The metadata fields below travel with the serialized payload, so a worker
    sees exactly what the producer declared.

    Example:
        class SendReport(Job):
            report_id: int
            max_attempts: int = 5

            async def handle(self):
                ...
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    queue: Optional[str] = None
    priority: Priority = Priority.NORMAL
    max_attempts: int = Field(default=3, ge=1)
    rate_limit: Optional[RateLimit] = None
    unique_key: Optional[str] = None
    unique_for: Optional[int] = Field(default=None, ge=1)

    # Set by the chain machinery, never by producers
    chain_id: Optional[str] = None
    chain_position: Optional[int] = None

    async def handle(self) -> Any:
        """Run the job. Any exception counts as a failed attempt."""
        raise NotImplementedError(f"{type(self).__name__} does not implement handle()")

    async def failed(self, exc: BaseException) -> None:
        """Hook invoked once when the job fails permanently."""
        return None
