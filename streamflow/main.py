"""StreamFlow application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI

from streamflow import __version__
from streamflow.api.routes import (
    generic_exception_handler,
    router,
    streamflow_exception_handler,
)
from streamflow.config import Settings, get_settings
from streamflow.services.history import HistoryService, InMemoryHistory
from streamflow.services.job_store import InMemoryJobStore
from streamflow.services.media import StaticMediaLibrary, SupabaseMediaLibrary
from streamflow.services.orchestrator import Orchestrator
from streamflow.services.supabase_store import create_job_store, create_supabase_client
from streamflow.utils.errors import StreamFlowError

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Wire the orchestrator to Supabase, or to in-memory collaborators when unconfigured."""
    if settings.uses_supabase:
        client = create_supabase_client()
        return Orchestrator(
            store=create_job_store(client),
            media=SupabaseMediaLibrary(client, media_root=settings.media_root),
            history=HistoryService(client),
            settings=settings,
        )

    logger.warning("Supabase is not configured; using in-memory job store and history")
    return Orchestrator(
        store=InMemoryJobStore(),
        media=StaticMediaLibrary({}),
        history=InMemoryHistory(),
        settings=settings,
    )


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Build the FastAPI app; the orchestrator is reconciled and started in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = orchestrator or build_orchestrator(get_settings())
        app.state.orchestrator = active
        await active.startup(run_scheduler=run_scheduler)
        logger.info(f"StreamFlow v{__version__} ready")
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(title="StreamFlow", version=__version__, lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(StreamFlowError, streamflow_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health")
    async def health() -> dict:
        active: Orchestrator = app.state.orchestrator
        return {
            "status": "ok",
            "scheduler_running": active.scheduler.running,
            "supervised_streams": len(active.supervisor.supervised_ids()),
        }

    return app


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
