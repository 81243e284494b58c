"""
Background scheduler for the periodic campaign jobs.

One APScheduler `BackgroundScheduler` per process runs the receipt-timeout
sweep and the scheduled-campaign dispatcher. The manager remembers the last
outcome of every job so `/health` can report it.

Job bodies are wrapped with `with_job_lock`: a manual trigger and a
scheduled run of the same job never overlap inside one process. Across
processes, the conditional UPDATEs in the reconciler and the campaign
claim keep duplicate runs harmless.
"""
import functools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


_job_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
_job_locks_guard = threading.Lock()


def with_job_lock(job_id: str):
    """
    Decorator that skips a job run while another run of the same job is active.

    Example:
        @with_job_lock("receipt_sweep")
        def sweep_receipts_sync():
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with _job_locks_guard:
                lock = _job_locks[job_id]

            if not lock.acquire(blocking=False):
                logger.info(f"Job {job_id} already running, skipping")
                return None

            try:
                return func(*args, **kwargs)
            finally:
                lock.release()

        return wrapper
    return decorator


@dataclass
class JobRun:
    """Outcome of the most recent run of one job."""
    outcome: str  # succeeded | failed | missed
    finished_at: datetime
    error: Optional[str] = None


class SchedulerManager:
    """Owns the BackgroundScheduler and tracks job outcomes."""

    def __init__(self, misfire_grace_seconds: int = 60):
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
        )
        self.last_runs: Dict[str, JobRun] = {}
        self._runs_lock = threading.Lock()
        self.scheduler.add_listener(self._record, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    def _record(self, event) -> None:
        now = datetime.now(timezone.utc)
        if event.code == EVENT_JOB_ERROR:
            run = JobRun("failed", now, error=f"{event.exception.__class__.__name__}: {event.exception}")
            logger.error(f"Job {event.job_id} failed: {run.error}", exc_info=event.exception)
        elif event.code == EVENT_JOB_MISSED:
            run = JobRun("missed", now)
            logger.warning(f"Job {event.job_id} missed its run time")
        else:
            run = JobRun("succeeded", now)
            logger.info(f"Job {event.job_id} finished (result: {event.retval})")

        with self._runs_lock:
            self.last_runs[event.job_id] = run

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        logger.info(f"Scheduler started with jobs: {[job.id for job in self.scheduler.get_jobs()]}")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler; with wait=True, running jobs finish first."""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler shut down")

    def add_interval_job(
        self,
        func: Callable,
        job_id: str,
        seconds: int = 0,
        minutes: int = 0,
    ) -> None:
        """Run `func` every `minutes`/`seconds`; re-adding a job id replaces it."""
        if seconds <= 0 and minutes <= 0:
            raise ValueError(f"Job {job_id} needs a positive interval")

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, minutes=minutes, timezone="UTC"),
            id=job_id,
            replace_existing=True,
        )
        logger.info(f"Scheduled job {job_id} every {minutes}m {seconds}s")

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()

    def job_status(self) -> List[Dict[str, Any]]:
        """Per-job next run time and last outcome, for health reporting."""
        with self._runs_lock:
            runs = dict(self.last_runs)

        status = []
        for job in self.scheduler.get_jobs():
            run = runs.get(job.id)
            next_run = getattr(job, "next_run_time", None)
            status.append({
                "id": job.id,
                "next_run_at": next_run.isoformat() if next_run else None,
                "last_outcome": run.outcome if run else None,
                "last_finished_at": run.finished_at.isoformat() if run else None,
                "last_error": run.error if run else None,
            })
        return status


_scheduler: Optional[SchedulerManager] = None


def get_scheduler() -> SchedulerManager:
    """Process-wide scheduler manager."""
    global _scheduler

    if _scheduler is None:
        _scheduler = SchedulerManager()

    return _scheduler
