"""Periodic scheduler loop for time-based job transitions."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from streamflow.models.job import Job
from streamflow.services.job_store import JobStore
from streamflow.utils.clock import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)

JobAction = Callable[[str], Awaitable[Job]]

TICK_JOB_ID = "scheduler-tick"


@dataclass
class TickReport:
    """What one tick did."""

    now: datetime
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: bool = False


class SchedulerLoop:
    """
    Periodic job that starts due scheduled jobs and stops expired live jobs.

    Ticks are driven by an APScheduler ``AsyncIOScheduler`` on the running
    event loop. Start and stop go through the same facade operations manual
    callers use. A tick that is still running when the next one comes due
    causes the next one to be skipped rather than queued: the interval job
    allows one instance and coalesces missed runs, and ``tick`` itself
    refuses to overlap when called directly.
    """

    def __init__(
        self,
        store: JobStore,
        start: JobAction,
        stop: JobAction,
        interval_seconds: float = 10.0,
        clock: Clock = utcnow,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.store = store
        self._start = start
        self._stop = stop
        self.interval = interval_seconds
        self.clock = clock
        self._tick_lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one scheduling pass.

        Args:
            now: Instant to evaluate schedules against; defaults to the clock

        Returns:
            TickReport listing the jobs started, stopped and failed
        """
        report = TickReport(now=ensure_utc(now or self.clock()))
        if self._tick_lock.locked():
            logger.warning("Previous scheduler tick still running, skipping this one")
            report.skipped = True
            return report

        async with self._tick_lock:
            await self._run_phase(report, "start", self.store.list_due_scheduled, self._start, report.started)
            await self._run_phase(report, "stop", self.store.list_expired_live, self._stop, report.stopped)
        return report

    async def _run_phase(
        self,
        report: TickReport,
        name: str,
        fetch: Callable[[datetime], Awaitable[list[Job]]],
        action: JobAction,
        done: list[str],
    ) -> None:
        try:
            jobs = await fetch(report.now)
        except Exception as e:
            logger.error(f"Scheduler could not fetch jobs to {name}: {e}")
            return

        for job in jobs:
            try:
                await action(job.id)
            except Exception as e:
                # Failed starts are already recorded on the job; not retried.
                logger.warning(f"Scheduled {name} failed for job {job.id}: {e}")
                report.failed[job.id] = str(e)
                continue
            done.append(job.id)
            logger.info(f"Scheduled {name} succeeded for job {job.id}")

    async def _scheduled_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")

    def start(self) -> None:
        """Register the interval job and start ticking; the first tick runs immediately."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self.interval),
            id=TICK_JOB_ID,
            name="Start due and stop expired jobs",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()
        logger.info(f"Scheduler running every {self.interval}s")

    async def stop(self) -> None:
        """Stop scheduling new ticks and wait for the current tick to finish."""
        if self._scheduler is None:
            return
        self._scheduler.pause()
        async with self._tick_lock:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")
