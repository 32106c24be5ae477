"""
perptrader Runner: Job Scheduler

APScheduler BackgroundScheduler with named jobs. Each name holds at most one
queued entry and one running instance; a run that comes due while the
previous one is still executing is skipped and counted, never queued.

- schedule_in(name, delay, fn): one-shot (date trigger)
- every(name, interval, fn): fixed cadence (interval trigger)

The underlying scheduler starts paused, so jobs can be queued and inspected
before start().
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
import logging

from apscheduler.events import EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobScheduler:
    """
    Args:
        max_workers: worker pool size
        metrics: optional MetricsRecorder (skipped runs)
    """

    def __init__(self, max_workers: int = 4, metrics=None):
        self.metrics = metrics
        self._job_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._skipped: Dict[str, int] = {}
        self._running = False

        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )
        self._scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)
        self._scheduler.start(paused=True)

    # ----- scheduling -----

    def schedule_in(self, name: str, delay_seconds: float, fn: Callable[[], None]) -> Job:
        """Run ``fn`` once after ``delay_seconds``, replacing any queued run of ``name``."""
        job = self._scheduler.add_job(
            self.run_guarded,
            trigger="date",
            run_date=_utcnow() + timedelta(seconds=max(0.0, delay_seconds)),
            args=(name, fn),
            id=name,
            name=name,
            replace_existing=True,
        )
        logger.debug(f"Scheduled {name} in {delay_seconds:.1f}s")
        return job

    def every(self, name: str, interval_seconds: float, fn: Callable[[], None],
              initial_delay: float = 0.0) -> Job:
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        job = self._scheduler.add_job(
            self.run_guarded,
            trigger="interval",
            seconds=interval_seconds,
            next_run_time=_utcnow() + timedelta(seconds=max(0.0, initial_delay)),
            args=(name, fn),
            id=name,
            name=name,
            replace_existing=True,
        )
        logger.debug(f"Scheduled {name} every {interval_seconds}s")
        return job

    def cancel(self, name: str) -> int:
        """Drop the queued entry for ``name``; a run already executing is not interrupted."""
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return 0
        return 1

    def pending(self) -> List[str]:
        """Queued job names, soonest first."""
        return [job.id for job in self._scheduler.get_jobs()]

    # ----- execution -----

    def run_guarded(self, name: str, fn: Callable[[], None]) -> bool:
        """
        Run ``fn`` under the job's lock.

        Covers direct calls (``--once``, tests) racing a scheduled run of the
        same job; scheduled overlaps are stopped earlier by ``max_instances``.

        Returns:
            False if a previous run of ``name`` is still executing (skipped)
        """
        lock = self._lock_for(name)
        if not lock.acquire(blocking=False):
            self._record_skip(name)
            return False
        try:
            fn()
        except Exception as e:
            logger.exception(f"Job {name} failed: {e}")
        finally:
            lock.release()
        return True

    def skipped_runs(self, name: Optional[str] = None):
        if name is None:
            return dict(self._skipped)
        return self._skipped.get(name, 0)

    def _on_max_instances(self, event) -> None:
        self._record_skip(event.job_id)

    def _record_skip(self, name: str) -> None:
        with self._locks_guard:
            self._skipped[name] = self._skipped.get(name, 0) + 1
        logger.warning(f"Skipping {name}: previous run still executing")
        if self.metrics:
            self.metrics.record_skipped_run(name)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._job_locks.get(name)
            if lock is None:
                lock = self._job_locks[name] = threading.Lock()
            return lock

    # ----- lifecycle -----

    def start(self) -> None:
        if self._running:
            return
        self._scheduler.resume()
        self._running = True
        logger.info("Job scheduler started")

    def stop(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Job scheduler stopped")

    def is_running(self) -> bool:
        return self._running
