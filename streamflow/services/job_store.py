"""Job store contract and the in-memory implementation."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from streamflow.models.job import Job, JobStatus
from streamflow.utils.clock import utcnow
from streamflow.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

# Fields the orchestrator may write alongside a status change.
TRANSITION_FIELDS = frozenset(
    {"process_handle", "started_at", "ended_at", "last_error", "schedule"}
)


class JobStore(ABC):
    """
    Durable record of job state.

    The only write the orchestrator performs is ``transition``, a
    compare-and-swap on the status column. Implementations must make it
    atomic per job id.
    """

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Return the job or None."""

    @abstractmethod
    async def list_by_status(self, status: JobStatus) -> list[Job]:
        """Return every job currently in status."""

    @abstractmethod
    async def _compare_and_swap(
        self, job_id: str, expected: JobStatus, new: JobStatus, fields: dict[str, Any]
    ) -> Optional[Job]:
        """Apply the update iff the stored status equals expected."""

    @abstractmethod
    async def save(self, job: Job) -> Job:
        """Insert or replace a job (used by the CRUD layer)."""

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Remove a job row."""

    async def transition(
        self, job_id: str, expected: JobStatus, new: JobStatus, **fields: Any
    ) -> Optional[Job]:
        """
        Compare-and-swap the status of a job.

        Args:
            job_id: Job to update
            expected: Status the caller believes the job is in
            new: Status to move to
            **fields: Extra columns written in the same update

        Returns:
            The updated job, or None if the stored status did not match

        Raises:
            NotFoundError: If the job does not exist
            PersistenceError: If the backend fails
        """
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable through transition: {sorted(unknown)}")

        fields["updated_at"] = utcnow()
        updated = await self._compare_and_swap(job_id, expected, new, fields)
        if updated is None:
            if await self.get(job_id) is None:
                raise NotFoundError(job_id)
            logger.warning(f"CAS conflict on job {job_id}: expected {expected.value}")
        return updated

    async def list_due_scheduled(self, now: datetime) -> list[Job]:
        """Scheduled jobs whose start instant is at or before now."""
        jobs = await self.list_by_status(JobStatus.SCHEDULED)
        return [job for job in jobs if job.is_due(now)]

    async def list_expired_live(self, now: datetime) -> list[Job]:
        """Live jobs whose duration budget has elapsed."""
        jobs = await self.list_by_status(JobStatus.LIVE)
        return [job for job in jobs if job.is_expired(now)]


class InMemoryJobStore(JobStore):
    """Dictionary-backed store for development and tests.

    Compare and set run without an intervening await, so each transition
    is atomic on the event loop.
    """

    def __init__(self, jobs: Optional[list[Job]] = None) -> None:
        self._jobs: dict[str, Job] = {}
        for job in jobs or []:
            self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        return [job.model_copy(deep=True) for job in self._jobs.values() if job.status == status]

    async def _compare_and_swap(
        self, job_id: str, expected: JobStatus, new: JobStatus, fields: dict[str, Any]
    ) -> Optional[Job]:
        current = self._jobs.get(job_id)
        if current is None or current.status != expected:
            return None
        updated = current.model_copy(update={"status": new, **fields}, deep=True)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def save(self, job: Job) -> Job:
        self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None
