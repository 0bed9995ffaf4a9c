"""FastAPI application factory: mounts API routes and runs the scheduler."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from dmarcsieve import __version__
from dmarcsieve.config import Config, load_config
from dmarcsieve.logging_setup import setup_logging
from dmarcsieve.scheduler import PipelineScheduler

logger = logging.getLogger(__name__)


def create_app(
    config: Config | None = None,
    scheduler: PipelineScheduler | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    The pipeline scheduler is started on application startup and stopped on
    shutdown. Pass ``start_scheduler=False`` to serve the API only.
    """
    if config is None:
        config = load_config()
    setup_logging(config.logging)

    if scheduler is None:
        scheduler = PipelineScheduler.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            scheduler.start(run_immediately=config.scheduler.run_on_start)
        try:
            yield
        finally:
            if start_scheduler:
                scheduler.stop()
            app.state.executor.shutdown(wait=False)

    app = FastAPI(title="DmarcSieve", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.scheduler = scheduler
    app.state.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dmarcsieve-manual")

    from dmarcsieve.web.api import router as api_router
    app.include_router(api_router, prefix="/api")

    @app.get("/")
    async def _root():
        return RedirectResponse(url="/api/health")

    return app
