"""jobqueue - Persistent Job Queue Engine

Job lifecycle management, atomic claiming, retries with backoff, stale-job
recovery, batches, chains, rate limiting and recurring schedules over
PostgreSQL or Redis.
"""

__version__ = "0.1.0"
