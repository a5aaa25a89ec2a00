"""Job worker - claims and executes jobs from the queue.

Usage:
    python -m jobqueue.jobs.worker [options]

Examples:
    # Work the default queue until stopped
    python -m jobqueue.jobs.worker --import myapp.jobs

    # Drain at most 100 jobs from "emails", then exit
    python -m jobqueue.jobs.worker --queue emails --max-jobs 100

    # Create the PostgreSQL tables first, expose metrics on :9102
    python -m jobqueue.jobs.worker --init-schema --metrics-port 9102
"""

import argparse
import asyncio
import importlib
import os
import signal
import socket
import sys
import traceback
from typing import Optional

import structlog
from prometheus_client import Gauge, start_http_server

from jobqueue import __version__
from jobqueue.config import get_settings
from jobqueue.services.manager import QueueManager
from jobqueue.services.scheduler import Scheduler

logger = structlog.get_logger(__name__)

WORKER_RUNNING = Gauge("jobqueue_worker_running", "Whether the worker loop is running")
WORKER_LAST_POLL_TIMESTAMP = Gauge(
    "jobqueue_worker_last_poll_timestamp", "Unix timestamp of the last poll"
)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerRunner:
    """Job worker that polls and executes jobs.

    Stops between jobs, never mid-job: on stop(), SIGINT/SIGTERM, after
    max_jobs executed jobs, or once timeout_seconds have passed.
    """

    def __init__(
        self,
        manager: QueueManager,
        queue: Optional[str] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        worker_id: Optional[str] = None,
        sleep_seconds: float = 3.0,
        max_jobs: int = 0,
        timeout_seconds: float = 0,
        stale_timeout_minutes: int = 30,
        reap_interval_seconds: float = 60,
        schedule_interval_seconds: float = 60,
        handle_signals: bool = True,
    ):
        self._manager = manager
        self._queue = queue or manager.default_queue
        self._scheduler = scheduler
        self._worker_id = worker_id or generate_worker_id()
        self._sleep_seconds = sleep_seconds
        self._max_jobs = max_jobs
        self._timeout_seconds = timeout_seconds
        self._stale_timeout = stale_timeout_minutes
        self._reap_interval = reap_interval_seconds
        self._schedule_interval = schedule_interval_seconds
        self._handle_signals = handle_signals
        self._running = False
        self._stop_event = asyncio.Event()
        self._processed = 0

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def processed(self) -> int:
        return self._processed

    async def start(self) -> int:
        """Run the worker loop. Returns the number of jobs executed."""
        loop = asyncio.get_running_loop()
        self._running = True
        self._stop_event.clear()
        self._processed = 0
        installed = self._install_signal_handlers(loop)

        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            version=__version__,
            queue=self._queue,
            max_jobs=self._max_jobs or None,
            timeout_seconds=self._timeout_seconds or None,
        )
        WORKER_RUNNING.set(1)

        started = loop.time()
        last_reap: Optional[float] = None
        last_schedule_check: Optional[float] = None

        try:
            while self._running:
                if self._max_jobs and self._processed >= self._max_jobs:
                    logger.info("worker_max_jobs_reached", processed=self._processed)
                    break

                now = loop.time()
                if self._timeout_seconds and now - started >= self._timeout_seconds:
                    logger.info("worker_timeout_reached", processed=self._processed)
                    break

                try:
                    # Periodic stale job recovery
                    if self._reap_interval and (
                        last_reap is None or now - last_reap >= self._reap_interval
                    ):
                        last_reap = now
                        await self._manager.release_stale_jobs(self._stale_timeout)

                    # Periodic schedule check
                    if (
                        self._scheduler is not None
                        and self._schedule_interval
                        and (
                            last_schedule_check is None
                            or now - last_schedule_check >= self._schedule_interval
                        )
                    ):
                        last_schedule_check = now
                        await self._scheduler.check_scheduled_jobs()

                    WORKER_LAST_POLL_TIMESTAMP.set_to_current_time()
                    if await self._manager.process_next(self._queue):
                        self._processed += 1
                    else:
                        # No job available, sleep
                        await self._sleep()

                except asyncio.CancelledError:
                    logger.info("worker_cancelled", worker_id=self._worker_id)
                    break
                except Exception as e:
                    logger.error(
                        "worker_loop_error", error=str(e), traceback=traceback.format_exc()
                    )
                    await self._sleep()
        finally:
            self._running = False
            self._remove_signal_handlers(loop, installed)
            WORKER_RUNNING.set(0)

        logger.info(
            "worker_stopped", worker_id=self._worker_id, processed=self._processed
        )
        return self._processed

    def stop(self) -> None:
        """Ask the loop to exit after the current job."""
        if self._running:
            logger.info("worker_stopping", worker_id=self._worker_id)
        self._running = False
        self._stop_event.set()

    async def _sleep(self) -> None:
        """Sleep between polls, waking early on stop()."""
        if self._sleep_seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._sleep_seconds)
        except asyncio.TimeoutError:
            pass

    def _install_signal_handlers(self, loop) -> list[int]:
        if not self._handle_signals:
            return []
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not the main thread, or no signal support on this platform
                pass
        return installed

    def _remove_signal_handlers(self, loop, installed: list[int]) -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run_worker(args: argparse.Namespace) -> int:
    """Build the queue context from settings and run the worker loop."""
    from jobqueue.core.bootstrap import create_context
    from jobqueue.core.logging import configure_logging
    from jobqueue.drivers.database import DatabaseDriver

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, settings.log_format)

    for module in args.imports:
        importlib.import_module(module)

    worker_id = args.worker_id or generate_worker_id()
    ctx = await create_context(settings, worker_id=worker_id)
    try:
        if args.init_schema and isinstance(ctx.driver, DatabaseDriver):
            await ctx.driver.ensure_schema()
            logger.info("schema_ensured")

        if args.metrics_port:
            start_http_server(args.metrics_port)
            logger.info("metrics_server_started", port=args.metrics_port)

        runner = WorkerRunner(
            ctx.manager,
            args.queue or settings.default_queue,
            scheduler=None if args.no_schedule else ctx.scheduler,
            worker_id=worker_id,
            sleep_seconds=(
                args.sleep if args.sleep is not None else settings.worker_sleep_seconds
            ),
            max_jobs=(
                args.max_jobs if args.max_jobs is not None else settings.worker_max_jobs
            ),
            timeout_seconds=(
                args.timeout
                if args.timeout is not None
                else settings.worker_timeout_seconds
            ),
            stale_timeout_minutes=settings.job_stale_timeout_minutes,
            reap_interval_seconds=settings.stale_reap_interval_seconds,
            schedule_interval_seconds=settings.schedule_check_interval_seconds,
        )
        await runner.start()
    finally:
        await ctx.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Job queue worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--queue", "-q", help="Queue to work (default: DEFAULT_QUEUE)")
    parser.add_argument(
        "--sleep", type=float, help="Seconds to sleep when no job is available"
    )
    parser.add_argument(
        "--max-jobs", type=int, help="Stop after this many jobs (0 = unbounded)"
    )
    parser.add_argument(
        "--timeout", type=float, help="Stop after this many seconds (0 = unbounded)"
    )
    parser.add_argument("--worker-id", help="Worker ID recorded on claimed jobs")
    parser.add_argument(
        "--import",
        dest="imports",
        action="append",
        default=[],
        metavar="MODULE",
        help="Import a module that defines jobs (repeatable)",
    )
    parser.add_argument(
        "--no-schedule",
        action="store_true",
        help="Do not run recurring schedules from this worker",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the PostgreSQL tables if missing (database driver only)",
    )
    parser.add_argument(
        "--metrics-port", type=int, help="Serve Prometheus metrics on this port"
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    return asyncio.run(run_worker(args))


if __name__ == "__main__":
    sys.exit(main())
