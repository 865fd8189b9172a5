"""Scheduling primitives for the background monitors.

This module provides:
- GuardedJob: Wraps a coroutine so that overlapping ticks are skipped
- MonitorScheduler: Thin APScheduler wrapper that registers GuardedJobs

Scheduling Options:
    1. APScheduler (in-process, used by ComplianceSystem):
       ```python
       scheduler = MonitorScheduler()
       job = GuardedJob("compliance_evaluation", evaluator.evaluate)
       scheduler.add_interval_job("compliance_evaluation", "Evaluate rules", job, minutes=15)
       scheduler.start()
       ```

    2. Deterministic (tests): call ``await job.run_once()`` directly.

A tick that fires while the previous run of the same job is still in
progress is skipped and counted, never queued. Stopping a schedule does not
cancel a run already in progress.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from compliance_monitor.errors import JobBusyError
from compliance_monitor.utils.timeutil import utc_now

logger = logging.getLogger(__name__)


class GuardedJob:
    """Coroutine wrapper with a non-blocking busy guard.

    Attributes:
        name: Job name used in logs
        runs: Number of ticks that executed
        skipped: Number of ticks skipped because a run was in progress
        failures: Number of runs that raised
        last_started_at: UTC start time of the latest executed tick
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]]) -> None:
        self.name = name
        self._func = func
        self._lock = asyncio.Lock()
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_started_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> bool:
        """Execute one tick unless a previous tick is still running.

        Exceptions from the wrapped coroutine are logged and counted so a
        failing tick never kills the schedule.

        Returns:
            True if the tick executed, False if it was skipped
        """
        if self._lock.locked():
            self.skipped += 1
            logger.warning("Skipping %s tick: previous run still in progress", self.name)
            return False

        async with self._lock:
            self.runs += 1
            self.last_started_at = utc_now()
            try:
                await self._func()
            except Exception:
                self.failures += 1
                logger.exception("Scheduled job %s failed", self.name)
        return True

    async def run_exclusive(self) -> Any:
        """Execute the wrapped coroutine now, under the same guard as ticks.

        For on-demand runs: the result is returned and exceptions propagate.

        Raises:
            JobBusyError: If a run is already in progress
        """
        if self._lock.locked():
            raise JobBusyError(self.name)

        async with self._lock:
            self.runs += 1
            self.last_started_at = utc_now()
            return await self._func()


class MonitorScheduler:
    """Registers GuardedJobs on an AsyncIOScheduler.

    Adding a job with an existing id replaces the previous schedule, so
    there is at most one active schedule per job id.

    Args:
        scheduler: Optional preconfigured AsyncIOScheduler
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler if scheduler is not None else AsyncIOScheduler()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def add_interval_job(self, job_id: str, name: str, job: GuardedJob, minutes: float) -> None:
        self._add(job_id, name, job, IntervalTrigger(minutes=minutes))
        logger.info("Scheduled %s every %s minutes", job_id, minutes)

    def add_cron_job(
        self, job_id: str, name: str, job: GuardedJob, hour: int, minute: int = 0
    ) -> None:
        self._add(job_id, name, job, CronTrigger(hour=hour, minute=minute))
        logger.info("Scheduled %s daily at %02d:%02d", job_id, hour, minute)

    def _add(self, job_id: str, name: str, job: GuardedJob, trigger: Any) -> None:
        self.remove_job(job_id)
        self._scheduler.add_job(
            job.run_once,
            trigger,
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
        )

    def remove_job(self, job_id: str) -> bool:
        """Cancel future ticks of a job.

        Returns:
            True if a job was removed, False if none was scheduled
        """
        if self._scheduler.get_job(job_id) is None:
            return False
        self._scheduler.remove_job(job_id)
        logger.info("Unscheduled %s", job_id)
        return True

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
