"""Job store backed by the Supabase ``streams`` table."""

import logging
from datetime import datetime
from typing import Any, Optional

from streamflow.models.job import Destination, EncodeParams, Job, JobStatus, Schedule, SourceRef
from streamflow.services.job_store import JobStore
from streamflow.utils.clock import utcnow
from streamflow.utils.errors import PersistenceError

logger = logging.getLogger(__name__)

STREAMS_TABLE = "streams"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def job_to_row(job: Job) -> dict[str, Any]:
    """Flatten a Job into a ``streams`` row."""
    return {
        "id": job.id,
        "user_id": job.owner_id,
        "title": job.title,
        "source_kind": job.source_ref.kind,
        "source_id": job.source_ref.id,
        "rtmp_url": job.destination.url,
        "stream_key": job.destination.key,
        "bitrate": job.encode.bitrate_kbps,
        "fps": job.encode.fps,
        "resolution": job.encode.resolution,
        "orientation": job.encode.orientation,
        "loop_video": 1 if job.encode.loop else 0,
        "scheduled_time": _iso(job.schedule.start_at),
        "duration_minutes": job.schedule.duration_minutes,
        "status": job.status.value,
        "pid": job.process_handle,
        "started_at": _iso(job.started_at),
        "ended_at": _iso(job.ended_at),
        "last_error": job.last_error,
        "updated_at": _iso(job.updated_at),
    }


def row_to_job(row: dict[str, Any]) -> Job:
    """Rebuild a Job from a ``streams`` row."""
    return Job(
        id=str(row["id"]),
        owner_id=str(row["user_id"]),
        title=row.get("title") or "",
        source_ref=SourceRef(kind=row.get("source_kind") or "video", id=str(row["source_id"])),
        destination=Destination(url=row.get("rtmp_url") or "", key=row.get("stream_key") or ""),
        encode=EncodeParams(
            bitrate_kbps=row.get("bitrate") or 2500,
            fps=row.get("fps") or 30,
            resolution=row.get("resolution") or "1280x720",
            orientation=row.get("orientation") or "horizontal",
            loop=bool(row.get("loop_video", 1)),
        ),
        schedule=Schedule(
            start_at=_parse(row.get("scheduled_time")),
            duration_minutes=row.get("duration_minutes"),
        ),
        status=JobStatus(row["status"]),
        process_handle=row.get("pid"),
        started_at=_parse(row.get("started_at")),
        ended_at=_parse(row.get("ended_at")),
        last_error=row.get("last_error"),
        updated_at=_parse(row.get("updated_at") or row.get("created_at")) or utcnow(),
    )


def _fields_to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for name, value in fields.items():
        if name == "process_handle":
            columns["pid"] = value
        elif name == "schedule":
            columns["scheduled_time"] = _iso(value.start_at)
            columns["duration_minutes"] = value.duration_minutes
        elif isinstance(value, datetime):
            columns[name] = value.isoformat()
        else:
            columns[name] = value
    return columns


class SupabaseJobStore(JobStore):
    """Service for job rows in Supabase."""

    def __init__(self, supabase_client: Any) -> None:
        """
        Initialize the SupabaseJobStore.

        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    async def get(self, job_id: str) -> Optional[Job]:
        """
        Retrieve a job by ID.

        Raises:
            PersistenceError: If the query fails
        """
        try:
            result = self.supabase.table(STREAMS_TABLE).select("*").eq("id", job_id).execute()
        except Exception as e:
            logger.error(f"Failed to get job {job_id}: {e}")
            raise PersistenceError(f"Failed to get job {job_id}: {e}", job_id=job_id) from e

        if not result.data:
            return None
        return row_to_job(result.data[0])

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        """
        Retrieve jobs filtered by status.

        Raises:
            PersistenceError: If the query fails
        """
        try:
            result = (
                self.supabase.table(STREAMS_TABLE).select("*").eq("status", status.value).execute()
            )
        except Exception as e:
            logger.error(f"Failed to list jobs by status {status.value}: {e}")
            raise PersistenceError(f"Failed to list {status.value} jobs: {e}") from e

        return [row_to_job(row) for row in result.data or []]

    async def _compare_and_swap(
        self, job_id: str, expected: JobStatus, new: JobStatus, fields: dict[str, Any]
    ) -> Optional[Job]:
        # The status filter makes the UPDATE a single conditional statement.
        update_data = {"status": new.value, **_fields_to_columns(fields)}
        try:
            result = (
                self.supabase.table(STREAMS_TABLE)
                .update(update_data)
                .eq("id", job_id)
                .eq("status", expected.value)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to transition job {job_id}: {e}")
            raise PersistenceError(f"Failed to transition job {job_id}: {e}", job_id=job_id) from e

        if not result.data:
            return None
        return row_to_job(result.data[0])

    async def save(self, job: Job) -> Job:
        """
        Insert or replace a job row.

        Raises:
            PersistenceError: If the write fails
        """
        try:
            result = self.supabase.table(STREAMS_TABLE).upsert(job_to_row(job)).execute()
        except Exception as e:
            logger.error(f"Failed to save job {job.id}: {e}")
            raise PersistenceError(f"Failed to save job {job.id}: {e}", job_id=job.id) from e

        if not result.data:
            raise PersistenceError(f"Failed to save job {job.id}", job_id=job.id)
        logger.info(f"Saved job {job.id}")
        return job

    async def delete(self, job_id: str) -> bool:
        """Delete a job row; returns whether a row was removed."""
        try:
            result = self.supabase.table(STREAMS_TABLE).delete().eq("id", job_id).execute()
        except Exception as e:
            logger.error(f"Failed to delete job {job_id}: {e}")
            raise PersistenceError(f"Failed to delete job {job_id}: {e}", job_id=job_id) from e

        return bool(result.data)


def create_supabase_client() -> Any:
    """Create a Supabase client using application settings."""
    from supabase import create_client

    from streamflow.config import get_settings

    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_key)


# Factory function for creating SupabaseJobStore with settings
def create_job_store(supabase_client: Optional[Any] = None) -> SupabaseJobStore:
    """
    Create a SupabaseJobStore using application settings.

    Returns:
        Configured SupabaseJobStore instance
    """
    return SupabaseJobStore(supabase_client=supabase_client or create_supabase_client())
