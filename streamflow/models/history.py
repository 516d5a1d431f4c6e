"""Stream history Pydantic models."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from streamflow.models.job import Job


class HistoryRecord(BaseModel):
    """Immutable snapshot written once per terminal transition out of live."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    job_id: str
    title: str = ""
    platform: str = "Custom"
    status: Literal["completed", "error"]
    started_at: Optional[datetime] = None
    ended_at: datetime
    duration_seconds: int = Field(default=0, ge=0)
    error_message: Optional[str] = None

    @classmethod
    def from_job(
        cls,
        job: Job,
        platform: str,
        status: Literal["completed", "error"],
        ended_at: datetime,
        error_message: Optional[str] = None,
    ) -> "HistoryRecord":
        """Build the record for a job leaving live at ended_at."""
        duration = 0
        if job.started_at is not None:
            duration = max(0, int((ended_at - job.started_at).total_seconds()))
        return cls(
            owner_id=job.owner_id,
            job_id=job.id,
            title=job.title,
            platform=platform,
            status=status,
            started_at=job.started_at,
            ended_at=ended_at,
            duration_seconds=duration,
            error_message=error_message,
        )


class HistoryStats(BaseModel):
    """Per-owner totals over recorded history."""

    total_streams: int = 0
    completed_streams: int = 0
    error_streams: int = 0
    total_duration_seconds: int = 0
