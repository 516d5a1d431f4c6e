"""FastAPI dependencies for the StreamFlow API."""

from typing import Iterator

from fastapi import Depends, Header, Request

from streamflow.config import Settings, get_settings
from streamflow.services.history import HistorySink
from streamflow.services.orchestrator import Orchestrator


def get_settings_dep() -> Settings:
    """Dependency for application settings."""
    return get_settings()


def get_orchestrator(request: Request) -> Orchestrator:
    """Dependency for the orchestrator built at startup."""
    return request.app.state.orchestrator


def get_history(orchestrator: Orchestrator = Depends(get_orchestrator)) -> HistorySink:
    """Dependency for the history collaborator."""
    return orchestrator.history


def upload_slot(
    x_owner_id: str = Header(..., min_length=1),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
) -> Iterator[int]:
    """
    Hold one concurrent-upload slot for the owner while the request runs.

    The upload first counts against the owner's hourly allowance
    (RateLimitError, HTTP 429), then takes a slot (CapacityError, HTTP
    429). The slot is released however the request ends, including client
    disconnect.
    """
    orchestrator.upload_limiter.hit(x_owner_id)
    with orchestrator.guard.slot(x_owner_id, settings.max_concurrent_uploads) as active:
        yield active
