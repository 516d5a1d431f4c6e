"""Custom exception classes for StreamFlow."""

from typing import Optional


class StreamFlowError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, job_id: Optional[str] = None) -> None:
        self.job_id = job_id
        super().__init__(message)


class ValidationError(StreamFlowError):
    """Missing or invalid destination or source."""

    pass


class SourceUnresolvedError(ValidationError):
    """The media collaborator could not resolve the job's source."""

    pass


class NotFoundError(StreamFlowError):
    """No job exists with the requested id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", job_id=job_id)


class ConflictError(StreamFlowError):
    """A status transition lost a compare-and-swap race."""

    def __init__(self, job_id: str, expected: str, actual: Optional[str] = None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job {job_id} is {actual or 'in another state'}, expected {expected}",
            job_id=job_id,
        )


class SpawnError(StreamFlowError):
    """The encoder process could not be launched."""

    pass


class CrashError(StreamFlowError):
    """The encoder process exited without a stop request."""

    def __init__(self, job_id: str, returncode: Optional[int], detail: str = "") -> None:
        self.returncode = returncode
        message = f"Encoder exited unexpectedly with code {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, job_id=job_id)


class StopTimeoutError(StreamFlowError):
    """Grace period elapsed after SIGTERM; the process was killed."""

    pass


class CapacityError(StreamFlowError):
    """Concurrency Guard limit reached for an owner."""

    def __init__(self, owner_id: str, limit: int) -> None:
        self.owner_id = owner_id
        self.limit = limit
        super().__init__(f"Maximum concurrent operations ({limit}) reached for {owner_id}")


class RateLimitError(CapacityError):
    """Owner started too many uploads within the rate window."""

    def __init__(self, owner_id: str, limit: int, window_seconds: float, retry_after: float) -> None:
        self.owner_id = owner_id
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = max(0.0, retry_after)
        StreamFlowError.__init__(
            self,
            f"Too many uploads: maximum {limit} per {int(window_seconds)}s for {owner_id}",
        )


class PersistenceError(StreamFlowError):
    """The job store is unavailable or rejected the operation."""

    pass
