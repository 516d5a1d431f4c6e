"""Utility modules for StreamFlow."""

from streamflow.utils.clock import Clock, ensure_utc, utcnow
from streamflow.utils.errors import (
    CapacityError,
    ConflictError,
    CrashError,
    NotFoundError,
    PersistenceError,
    RateLimitError,
    SourceUnresolvedError,
    SpawnError,
    StopTimeoutError,
    StreamFlowError,
    ValidationError,
)
from streamflow.utils.retry import with_retry

__all__ = [
    "Clock",
    "ensure_utc",
    "utcnow",
    "StreamFlowError",
    "ValidationError",
    "SourceUnresolvedError",
    "NotFoundError",
    "ConflictError",
    "SpawnError",
    "CrashError",
    "StopTimeoutError",
    "CapacityError",
    "PersistenceError",
    "RateLimitError",
    "with_retry",
]
