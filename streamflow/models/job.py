"""Relay job Pydantic models and the status transition table."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from streamflow.utils.clock import ensure_utc, utcnow


class JobStatus(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    LIVE = "live"
    STOPPING = "stopping"
    OFFLINE = "offline"
    ERROR = "error"


# Statuses that own an encoder process.
ACTIVE_STATUSES = frozenset({JobStatus.LIVE, JobStatus.STOPPING})

# Statuses from which a start may be requested.
STARTABLE_STATUSES = frozenset(
    {JobStatus.IDLE, JobStatus.SCHEDULED, JobStatus.OFFLINE, JobStatus.ERROR}
)

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.IDLE: frozenset({JobStatus.SCHEDULED, JobStatus.LIVE, JobStatus.ERROR}),
    JobStatus.SCHEDULED: frozenset(
        {JobStatus.SCHEDULED, JobStatus.IDLE, JobStatus.LIVE, JobStatus.ERROR}
    ),
    # live -> live only attaches the process handle after spawn
    JobStatus.LIVE: frozenset({JobStatus.LIVE, JobStatus.STOPPING, JobStatus.ERROR}),
    JobStatus.STOPPING: frozenset({JobStatus.OFFLINE}),
    JobStatus.OFFLINE: frozenset({JobStatus.LIVE, JobStatus.ERROR, JobStatus.SCHEDULED}),
    JobStatus.ERROR: frozenset({JobStatus.LIVE, JobStatus.ERROR, JobStatus.SCHEDULED}),
}


def is_allowed(current: JobStatus, new: JobStatus) -> bool:
    """Whether the state machine has an edge from current to new."""
    return new in TRANSITIONS[current]


class SourceRef(BaseModel):
    """Opaque reference to a single video or an ordered playlist."""

    kind: Literal["video", "playlist"] = "video"
    id: str = Field(min_length=1)


class Destination(BaseModel):
    """Ingest endpoint and stream key."""

    url: str = ""
    key: str = ""

    @property
    def target(self) -> str:
        """Full publish URL handed to the encoder."""
        if not self.key:
            return self.url
        return f"{self.url.rstrip('/')}/{self.key}"


class EncodeParams(BaseModel):
    """Encoder settings for one job."""

    bitrate_kbps: int = Field(default=2500, ge=100, le=50000)
    fps: int = Field(default=30, ge=1, le=120)
    resolution: str = Field(default="1280x720", pattern=r"^\d{2,5}x\d{2,5}$")
    orientation: Literal["horizontal", "vertical"] = "horizontal"
    loop: bool = True

    def frame_size(self) -> tuple[int, int]:
        """Width and height after applying orientation."""
        width, height = (int(part) for part in self.resolution.split("x"))
        if self.orientation == "vertical" and width > height:
            return height, width
        return width, height


class Schedule(BaseModel):
    """Optional start instant and duration budget."""

    start_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1)

    @field_validator("start_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Normalize to aware UTC."""
        return ensure_utc(v) if v is not None else None


class Job(BaseModel):
    """One relay task and its lifecycle state."""

    id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    title: str = ""
    source_ref: SourceRef
    destination: Destination = Field(default_factory=Destination)
    encode: EncodeParams = Field(default_factory=EncodeParams)
    schedule: Schedule = Field(default_factory=Schedule)
    status: JobStatus = JobStatus.IDLE
    process_handle: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("started_at", "ended_at", "updated_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Normalize to aware UTC."""
        return ensure_utc(v) if v is not None else None

    def deadline(self) -> Optional[datetime]:
        """Instant the duration budget runs out, if the job has one and is running."""
        if self.started_at is None or self.schedule.duration_minutes is None:
            return None
        return self.started_at + timedelta(minutes=self.schedule.duration_minutes)

    def is_due(self, now: datetime) -> bool:
        """Scheduled and its start instant has arrived."""
        if self.status != JobStatus.SCHEDULED:
            return False
        start_at = self.schedule.start_at
        return start_at is None or start_at <= ensure_utc(now)

    def is_expired(self, now: datetime) -> bool:
        """Live and past its duration budget."""
        if self.status != JobStatus.LIVE:
            return False
        deadline = self.deadline()
        return deadline is not None and deadline <= ensure_utc(now)
