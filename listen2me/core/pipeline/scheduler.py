"""
Scheduler
=========

Two asyncio interval loops: the analysis pass and the expiration sweep.
Manual triggers call the same pass functions the loops do.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from listen2me.core.clock import Clock
from listen2me.core.pipeline.batcher import AnalysisBatcher
from listen2me.core.pipeline.lifecycle import EventLifecycleManager

logger = structlog.get_logger()


MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 1440


@dataclass
class IntervalJob:
    name: str
    interval_minutes: int
    func: Callable[[], Awaitable[Any]]
    task: Optional[asyncio.Task] = None
    is_executing: bool = False
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_error: Optional[str] = None
    run_count: int = 0
    failure_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_minutes": self.interval_minutes,
            "running": self.task is not None and not self.task.done(),
            "is_executing": self.is_executing,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }


class Scheduler:
    """Owns the timer loops. The passes themselves live elsewhere."""

    def __init__(
        self,
        batcher: AnalysisBatcher,
        lifecycle: EventLifecycleManager,
        clock: Clock,
        analysis_interval_minutes: int = 30,
        expiration_interval_minutes: int = 60,
    ):
        self.batcher = batcher
        self.lifecycle = lifecycle
        self.clock = clock
        self.analysis_job = IntervalJob(
            "analysis", _validate_interval(analysis_interval_minutes), self._analysis_job
        )
        self.expiration_job = IntervalJob(
            "expiration_check", _validate_interval(expiration_interval_minutes), self._expiration_job
        )
        self.is_running = False

    @property
    def jobs(self) -> Dict[str, IntervalJob]:
        return {job.name: job for job in (self.analysis_job, self.expiration_job)}

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def start(self) -> None:
        if self.is_running:
            logger.warning("scheduler_already_running")
            return
        for job in self.jobs.values():
            self._start_job(job)
        self.is_running = True
        logger.info(
            "scheduler_started",
            analysis_interval_minutes=self.analysis_job.interval_minutes,
            expiration_interval_minutes=self.expiration_job.interval_minutes,
            timezone=self.clock.tz.key,
        )

    async def stop(self) -> None:
        tasks = [job.task for job in self.jobs.values() if job.task]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self.jobs.values():
            job.task = None
            job.next_run = None
        self.is_running = False
        logger.info("scheduler_stopped")

    def _start_job(self, job: IntervalJob) -> None:
        job.task = asyncio.create_task(self._loop(job), name=f"scheduler:{job.name}")

    async def _loop(self, job: IntervalJob) -> None:
        while True:
            delay = timedelta(minutes=job.interval_minutes)
            job.next_run = self.clock.now() + delay
            await asyncio.sleep(delay.total_seconds())
            await self._execute(job)

    async def _execute(self, job: IntervalJob) -> None:
        """Run one job iteration. Failures are logged, never raised."""
        job.is_executing = True
        job.last_run = self.clock.now()
        try:
            await job.func()
            job.run_count += 1
            job.last_error = None
        except Exception as e:
            job.failure_count += 1
            job.last_error = str(e)
            logger.error("scheduled_job_failed", job=job.name, error=str(e), exc_info=e)
        finally:
            job.is_executing = False

    async def _analysis_job(self) -> None:
        result = await self.batcher.run_analysis_pass()
        logger.info("scheduled_analysis_finished", **result.to_dict())

    async def _expiration_job(self) -> None:
        count = await self.lifecycle.run_expiration_sweep()
        logger.info("scheduled_expiration_check_finished", expired=count)

    # ==========================================================================
    # Manual Triggers
    # ==========================================================================

    async def trigger_analysis(self) -> Dict[str, Any]:
        logger.info("analysis_triggered_manually")
        self.analysis_job.last_run = self.clock.now()
        result = await self.batcher.run_analysis_pass()
        return result.to_dict()

    async def trigger_expiration_check(self) -> Dict[str, Any]:
        logger.info("expiration_check_triggered_manually")
        self.expiration_job.last_run = self.clock.now()
        count = await self.lifecycle.run_expiration_sweep()
        return {"expired_count": count, "checked_at": self.clock.now_string()}

    # ==========================================================================
    # Control
    # ==========================================================================

    def update_analysis_interval(self, minutes: int) -> None:
        """Change the analysis interval and restart its timer."""
        self.analysis_job.interval_minutes = _validate_interval(minutes)
        logger.info("analysis_interval_updated", minutes=minutes)

        job = self.analysis_job
        if not self.is_running or job.is_executing:
            # A loop mid-pass picks the new interval up on its next sleep
            return
        if job.task:
            job.task.cancel()
        self._start_job(job)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "timezone": self.clock.tz.key,
            "current_time": self.clock.now_string(),
            "jobs": {name: job.to_dict() for name, job in self.jobs.items()},
        }


def _validate_interval(minutes: int) -> int:
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValueError("Interval must be an integer number of minutes")
    if not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
        raise ValueError(
            f"Interval must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES} minutes"
        )
    return minutes
