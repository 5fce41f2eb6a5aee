"""Asyncio-based scheduler for the periodic sweep jobs.

Each registered job runs in its own asyncio task that sleeps for the job's
interval and then fires it. Every firing is tracked as a ``JobRun``; a
failing run is logged and recorded but never stops the loop.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog

from opsagent.core.domain.errors import NotFoundError, ValidationError
from opsagent.core.domain.scheduling import JobRun
from opsagent.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

JobFunc = Callable[[], Awaitable[dict[str, Any] | None]]


def parse_interval(expression: str) -> timedelta:
    """Parse an interval expression like '15m', '1h', '30s' into timedelta.

    Raises:
        ValidationError: For empty, malformed or non-positive intervals.
    """
    expr = expression.strip().lower()
    units = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}
    unit = "seconds"
    if expr and expr[-1] in units:
        unit = units[expr[-1]]
        expr = expr[:-1]
    if not expr.isdigit() or int(expr) <= 0:
        raise ValidationError(
            f"Invalid interval: {expression!r}", details={"expression": expression}
        )
    return timedelta(**{unit: int(expr)})


@dataclass
class PeriodicJob:
    name: str
    interval: timedelta
    func: JobFunc
    enabled: bool = True
    history: deque[JobRun] = field(default_factory=deque)
    last_run: JobRun | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": int(self.interval.total_seconds()),
            "enabled": self.enabled,
            "last_run": self.last_run.to_dict() if self.last_run else None,
            "runs": len(self.history),
        }


class PeriodicScheduler:
    """Runs named interval jobs until stopped."""

    def __init__(self, run_history_limit: int = 50) -> None:
        self.run_history_limit = run_history_limit
        self._jobs: dict[str, PeriodicJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def add_job(self, name: str, interval: str | timedelta, func: JobFunc) -> PeriodicJob:
        """Register a job; it starts looping immediately if the scheduler runs."""
        if name in self._jobs:
            raise ValidationError(f"Job already registered: {name}", details={"job": name})
        period = parse_interval(interval) if isinstance(interval, str) else interval
        job = PeriodicJob(
            name=name,
            interval=period,
            func=func,
            history=deque(maxlen=self.run_history_limit),
        )
        self._jobs[name] = job
        if self._running:
            self._schedule_task(job)
        logger.info("scheduler.job_added", job=name, interval_seconds=period.total_seconds())
        return job

    def list_jobs(self) -> list[PeriodicJob]:
        return list(self._jobs.values())

    def history(self, name: str) -> list[JobRun]:
        """Past runs of ``name``, oldest first."""
        return list(self._get_job(name).history)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            if job.enabled:
                self._schedule_task(job)
        logger.info("scheduler.started", job_count=len(self._jobs))

    async def stop(self) -> None:
        """Cancel every job loop and wait for them to finish."""
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduler.stopped")

    async def run_now(self, name: str) -> JobRun:
        """Fire ``name`` immediately, outside its regular cadence.

        Raises:
            NotFoundError: If no job with that name is registered.
        """
        return await self._fire_job(self._get_job(name))

    def _get_job(self, name: str) -> PeriodicJob:
        job = self._jobs.get(name)
        if job is None:
            raise NotFoundError(f"Unknown job: {name}", details={"job": name})
        return job

    def _schedule_task(self, job: PeriodicJob) -> None:
        existing = self._tasks.pop(job.name, None)
        if existing:
            existing.cancel()
        self._tasks[job.name] = asyncio.create_task(
            self._run_interval(job), name=f"scheduler-{job.name}"
        )

    async def _run_interval(self, job: PeriodicJob) -> None:
        try:
            while self._running and job.enabled:
                await asyncio.sleep(job.interval.total_seconds())
                if self._running and job.enabled:
                    await self._fire_job(job)
        except asyncio.CancelledError:
            pass

    async def _fire_job(self, job: PeriodicJob) -> JobRun:
        run = JobRun(job_name=job.name, scheduled_at=utc_now())
        job.history.append(run)
        job.last_run = run
        run.mark_running()
        try:
            result = await job.func()
        except Exception as exc:
            run.mark_failed(str(exc) or type(exc).__name__)
            logger.error("scheduler.job_error", job=job.name, run_id=run.run_id, error=str(exc))
            return run
        run.mark_completed(result)
        logger.info("scheduler.job_fired", job=job.name, run_id=run.run_id)
        return run
