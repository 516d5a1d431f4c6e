"""Orchestrator facade: the one entry point for job lifecycle operations."""

import logging
from datetime import datetime
from typing import Optional

from streamflow.config import Settings
from streamflow.models.job import ACTIVE_STATUSES, STARTABLE_STATUSES, Job, JobStatus, Schedule
from streamflow.services.guard import ConcurrencyGuard, UploadRateLimiter
from streamflow.services.history import HistorySink
from streamflow.services.job_store import JobStore
from streamflow.services.media import MediaResolver
from streamflow.services.scheduler import SchedulerLoop, TickReport
from streamflow.services.supervisor import ProcessSupervisor, Spawner, spawn_subprocess
from streamflow.utils.clock import Clock, ensure_utc, utcnow
from streamflow.utils.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Manual and scheduled lifecycle actions for relay jobs.

    The scheduler loop calls back into ``start`` and ``stop`` on this
    object, so every transition shares one code path.
    """

    def __init__(
        self,
        store: JobStore,
        media: MediaResolver,
        history: HistorySink,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        spawner: Spawner = spawn_subprocess,
        guard: Optional[ConcurrencyGuard] = None,
    ) -> None:
        settings = settings or Settings()
        self.settings = settings
        self.store = store
        self.history = history
        self.clock = clock
        self.guard = guard or ConcurrencyGuard()
        self.upload_limiter = UploadRateLimiter(
            limit=settings.upload_rate_limit,
            window_seconds=settings.upload_rate_window_seconds,
            clock=clock,
        )
        self.supervisor = ProcessSupervisor(
            store=store,
            media=media,
            history=history,
            ffmpeg_path=settings.ffmpeg_path,
            grace_seconds=settings.stop_grace_seconds,
            clock=clock,
            spawner=spawner,
            history_attempts=settings.history_retry_attempts,
            history_base_delay=settings.base_delay_seconds,
        )
        self.scheduler = SchedulerLoop(
            store=store,
            start=self.start,
            stop=self.stop,
            interval_seconds=settings.scheduler_tick_seconds,
            clock=clock,
        )

    async def _require(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    # ==================== LIFECYCLE ====================

    async def start(self, job_id: str) -> Job:
        """
        Start a job now.

        Raises:
            NotFoundError, ConflictError, ValidationError, SpawnError
        """
        job = await self._require(job_id)
        return await self.supervisor.start(job)

    async def stop(self, job_id: str) -> Job:
        """Stop a job; succeeds without effect when it is not live."""
        job = await self._require(job_id)
        return await self.supervisor.stop(job)

    async def status(self, job_id: str) -> Job:
        """Current snapshot of a job."""
        return await self._require(job_id)

    async def create_due(self, job_id: str) -> Job:
        """
        Hand a job to the orchestrator according to its schedule.

        Starts it immediately when it has no start instant or the instant
        has passed; otherwise parks it in ``scheduled`` for the loop.
        """
        job = await self._require(job_id)
        start_at = job.schedule.start_at
        if start_at is None or start_at <= ensure_utc(self.clock()):
            return await self.supervisor.start(job)
        if job.status == JobStatus.SCHEDULED:
            return job
        return await self._to_scheduled(job, job.schedule)

    async def schedule(
        self,
        job_id: str,
        start_at: Optional[datetime],
        duration_minutes: Optional[int] = None,
    ) -> Job:
        """Set (or replace) a job's schedule and move it to ``scheduled``."""
        job = await self._require(job_id)
        return await self._to_scheduled(
            job, Schedule(start_at=start_at, duration_minutes=duration_minutes)
        )

    async def _to_scheduled(self, job: Job, schedule: Schedule) -> Job:
        if job.status not in STARTABLE_STATUSES:
            raise ConflictError(job.id, expected="a schedulable status", actual=job.status.value)
        updated = await self.store.transition(
            job.id, job.status, JobStatus.SCHEDULED, schedule=schedule
        )
        if updated is None:
            raise ConflictError(job.id, expected=job.status.value)
        logger.info(f"Job {job.id} scheduled for {schedule.start_at or 'the next tick'}")
        return updated

    async def unschedule(self, job_id: str) -> Job:
        """Return a scheduled job to ``idle``."""
        job = await self._require(job_id)
        if job.status != JobStatus.SCHEDULED:
            raise ConflictError(job.id, expected=JobStatus.SCHEDULED.value, actual=job.status.value)
        updated = await self.store.transition(job.id, JobStatus.SCHEDULED, JobStatus.IDLE)
        if updated is None:
            raise ConflictError(job.id, expected=JobStatus.SCHEDULED.value)
        return updated

    async def prepare_delete(self, job_id: str) -> Job:
        """
        Make a job safe for the CRUD layer to delete.

        A live job is stopped first; a job mid-stop is refused.
        """
        job = await self._require(job_id)
        if job.status == JobStatus.STOPPING:
            raise ConflictError(job.id, expected="not stopping", actual=job.status.value)
        if job.status == JobStatus.LIVE:
            job = await self.supervisor.stop(job)
        if job.status in ACTIVE_STATUSES:
            raise ConflictError(job.id, expected="not live", actual=job.status.value)
        return job

    # ==================== SCHEDULING ====================

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """One scheduler pass at ``now`` (defaults to the clock)."""
        return await self.scheduler.tick(now)

    async def startup(self, run_scheduler: bool = True) -> int:
        """
        Reconcile stale rows, then start the scheduler loop.

        Returns:
            Number of jobs reconciled
        """
        reconciled = await self.supervisor.reconcile()
        if run_scheduler:
            self.scheduler.start()
        return reconciled

    async def shutdown(self) -> None:
        """Stop the loop, every supervised encoder if configured, then flush history."""
        await self.scheduler.stop()
        if self.settings.stop_streams_on_shutdown:
            for job_id in self.supervisor.supervised_ids():
                try:
                    await self.stop(job_id)
                except Exception:
                    logger.exception(f"Failed to stop job {job_id} during shutdown")
        await self.supervisor.drain_history(timeout=self.settings.stop_grace_seconds)
