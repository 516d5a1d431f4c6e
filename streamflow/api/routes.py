"""FastAPI routes for StreamFlow."""

import logging
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from streamflow.api.deps import get_history, get_orchestrator, get_settings_dep, upload_slot
from streamflow.config import Settings
from streamflow.models.history import HistoryRecord, HistoryStats
from streamflow.models.job import Job
from streamflow.services.history import HistorySink
from streamflow.services.orchestrator import Orchestrator
from streamflow.services.platform import detect_platform
from streamflow.utils.errors import (
    CapacityError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    RateLimitError,
    SpawnError,
    StreamFlowError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


# ==================== Exception Handlers ====================

ERROR_STATUS_CODES: tuple[tuple[type[StreamFlowError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (CapacityError, 429),
    (SpawnError, 502),
    (PersistenceError, 503),
)


def status_code_for(exc: StreamFlowError) -> int:
    """HTTP status for an application error."""
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def streamflow_exception_handler(request: Request, exc: StreamFlowError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(math.ceil(exc.retry_after))}
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
        headers=headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": "InternalError",
        },
    )


# ==================== Request/Response Models ====================


class ScheduleRequest(BaseModel):
    """Request model for the schedule endpoint."""

    start_at: Optional[datetime] = Field(default=None, description="When to go live; omit for next tick")
    duration_minutes: Optional[int] = Field(default=None, ge=1, description="Stop after this long")


class StreamStatusResponse(BaseModel):
    """Response model for lifecycle endpoints."""

    job_id: str
    owner_id: str
    title: str
    platform: str
    status: str
    pid: Optional[int] = None
    scheduled_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "StreamStatusResponse":
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            title=job.title,
            platform=detect_platform(job.destination.url),
            status=job.status.value,
            pid=job.process_handle,
            scheduled_time=job.schedule.start_at,
            duration_minutes=job.schedule.duration_minutes,
            started_at=job.started_at,
            ended_at=job.ended_at,
            last_error=job.last_error,
        )


class UploadCapacityResponse(BaseModel):
    """Concurrent upload usage for one owner."""

    owner_id: str
    active: int
    limit: int


# ==================== Stream Endpoints ====================


@router.post("/api/streams/{job_id}/start", response_model=StreamStatusResponse)
async def start_stream(
    job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> StreamStatusResponse:
    """Go live now."""
    job = await orchestrator.start(job_id)
    return StreamStatusResponse.from_job(job)


@router.post("/api/streams/{job_id}/stop", response_model=StreamStatusResponse)
async def stop_stream(
    job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> StreamStatusResponse:
    """
    Stop a live stream.

    Stopping a stream that is not live succeeds and changes nothing.
    """
    job = await orchestrator.stop(job_id)
    return StreamStatusResponse.from_job(job)


@router.post("/api/streams/{job_id}/schedule", response_model=StreamStatusResponse)
async def schedule_stream(
    job_id: str,
    request: ScheduleRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamStatusResponse:
    """Schedule a stream to go live at ``start_at``, optionally for a bounded duration."""
    job = await orchestrator.schedule(job_id, request.start_at, request.duration_minutes)
    return StreamStatusResponse.from_job(job)


@router.delete("/api/streams/{job_id}/schedule", response_model=StreamStatusResponse)
async def unschedule_stream(
    job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> StreamStatusResponse:
    job = await orchestrator.unschedule(job_id)
    return StreamStatusResponse.from_job(job)


@router.get("/api/streams/{job_id}/status", response_model=StreamStatusResponse)
async def stream_status(
    job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> StreamStatusResponse:
    job = await orchestrator.status(job_id)
    return StreamStatusResponse.from_job(job)


@router.post("/api/streams/{job_id}/prepare-delete", response_model=StreamStatusResponse)
async def prepare_delete_stream(
    job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> StreamStatusResponse:
    """Stop a live stream so the caller can delete it."""
    job = await orchestrator.prepare_delete(job_id)
    return StreamStatusResponse.from_job(job)


# ==================== History Endpoints ====================


@router.get("/api/history/{owner_id}", response_model=list[HistoryRecord])
async def list_history(
    owner_id: str, history: HistorySink = Depends(get_history)
) -> list[HistoryRecord]:
    return await history.list_for_owner(owner_id)


@router.get("/api/history/{owner_id}/stats", response_model=HistoryStats)
async def history_stats(
    owner_id: str, history: HistorySink = Depends(get_history)
) -> HistoryStats:
    return await history.stats(owner_id)


# ==================== Upload Capacity ====================


@router.get("/api/uploads/{owner_id}/active", response_model=UploadCapacityResponse)
async def upload_capacity(
    owner_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
) -> UploadCapacityResponse:
    return UploadCapacityResponse(
        owner_id=owner_id,
        active=orchestrator.guard.active(owner_id),
        limit=settings.max_concurrent_uploads,
    )


@router.post("/api/uploads/slot", response_model=UploadCapacityResponse)
async def reserve_upload_slot(
    request: Request,
    active: int = Depends(upload_slot),
    settings: Settings = Depends(get_settings_dep),
) -> UploadCapacityResponse:
    """
    Hold an upload slot for the lifetime of this request.

    The storage layer streams the request body while the slot is held;
    the response reports how many uploads the owner had in flight.
    """
    await request.body()
    return UploadCapacityResponse(
        owner_id=request.headers["x-owner-id"],
        active=active,
        limit=settings.max_concurrent_uploads,
    )
