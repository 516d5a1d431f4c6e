"""Pydantic data models for StreamFlow."""

from streamflow.models.history import HistoryRecord, HistoryStats
from streamflow.models.job import (
    ACTIVE_STATUSES,
    STARTABLE_STATUSES,
    Destination,
    EncodeParams,
    Job,
    JobStatus,
    Schedule,
    SourceRef,
    is_allowed,
)

__all__ = [
    "ACTIVE_STATUSES",
    "STARTABLE_STATUSES",
    "Destination",
    "EncodeParams",
    "Job",
    "JobStatus",
    "Schedule",
    "SourceRef",
    "is_allowed",
    "HistoryRecord",
    "HistoryStats",
]
