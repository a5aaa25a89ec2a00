"""Queue services: manager, batches, chains, rate limiting and scheduling."""

from jobqueue.services.manager import DispatchResult, QueueManager
from jobqueue.services.rate_limiter import RateLimiter
from jobqueue.services.scheduler import Scheduler

__all__ = ["DispatchResult", "QueueManager", "RateLimiter", "Scheduler"]
