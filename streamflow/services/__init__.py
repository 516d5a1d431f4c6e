"""Service layer for StreamFlow."""

from streamflow.services.guard import ConcurrencyGuard, UploadRateLimiter
from streamflow.services.history import HistoryService, HistorySink, InMemoryHistory
from streamflow.services.job_store import InMemoryJobStore, JobStore
from streamflow.services.media import (
    MediaResolver,
    ResolvedMedia,
    StaticMediaLibrary,
    SupabaseMediaLibrary,
)
from streamflow.services.orchestrator import Orchestrator
from streamflow.services.platform import detect_platform
from streamflow.services.scheduler import SchedulerLoop, TickReport
from streamflow.services.supabase_store import SupabaseJobStore, create_job_store
from streamflow.services.supervisor import ProcessSupervisor

__all__ = [
    "ConcurrencyGuard",
    "UploadRateLimiter",
    "HistoryService",
    "HistorySink",
    "InMemoryHistory",
    "InMemoryJobStore",
    "JobStore",
    "MediaResolver",
    "ResolvedMedia",
    "StaticMediaLibrary",
    "SupabaseMediaLibrary",
    "Orchestrator",
    "detect_platform",
    "SchedulerLoop",
    "TickReport",
    "SupabaseJobStore",
    "create_job_store",
    "ProcessSupervisor",
]
