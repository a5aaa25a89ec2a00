"""Job system package."""

from jobqueue.jobs.types import ChainStatus, JobStatus, Priority
from jobqueue.jobs.base import Job, RateLimit
from jobqueue.jobs.models import JobData, JobRecord
from jobqueue.jobs.registry import (
    CallbackRegistry,
    JobRegistry,
    default_callbacks,
    default_registry,
)

__all__ = [
    "ChainStatus",
    "JobStatus",
    "Priority",
    "Job",
    "RateLimit",
    "JobData",
    "JobRecord",
    "CallbackRegistry",
    "JobRegistry",
    "default_callbacks",
    "default_registry",
]
