"""FastAPI application wiring for the Messenger reply pipeline.

- Configures logging and Prometheus metrics.
- Builds the pipeline exactly once in the application lifespan (queue,
  repositories, gateway, broadcaster and, unless ``START_WORKERS=false``,
  the stage workers) and stores the handles on ``app.state.pipeline``.
- Mounts the webhook, realtime and failed-job routers plus health/version
  probes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .pipeline.startup import PipelineHandles, start_pipeline
from .routers import jobs, realtime, webhooks

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(
    pipeline_factory: Callable[[], PipelineHandles] = start_pipeline,
) -> FastAPI:
    """Create the app; ``pipeline_factory`` runs once when the app starts."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        handles = pipeline_factory()
        app.state.pipeline = handles
        if handles.relay is not None:
            handles.relay.start()
        logger.info("pagebot %s started", __version__)
        try:
            yield
        finally:
            if handles.relay is not None:
                await handles.relay.stop()
            handles.stop()
            app.state.pipeline = None
            logger.info("pagebot stopped")

    app = FastAPI(title="pagebot", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.include_router(webhooks.router)
    app.include_router(jobs.router)
    app.include_router(realtime.router)

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe including queue reachability."""
        handles = getattr(app.state, "pipeline", None)
        queue_ok = bool(handles and handles.queue.ping())
        workers = bool(handles and handles.workers and handles.workers.running)
        return {
            "status": "ok",
            "queue": "up" if queue_ok else "down",
            "workers": workers,
        }

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()
