"""Admin API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler opening (and closing) the database pool
- Health endpoint at GET /health
- Replay and job inspection routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI

from tidings import __version__
from tidings.api.middleware import register_error_handlers
from tidings.api.routers.jobs import router as jobs_router
from tidings.api.routers.replay import router as replay_router
from tidings.config import PipelineConfig
from tidings.jobs.store import JobStore
from tidings.replay import ReplayController

logger = logging.getLogger(__name__)


def _install_services(app: FastAPI, pool: asyncpg.Pool, config: PipelineConfig) -> None:
    store = JobStore(pool, stale_processing_s=config.worker.stale_processing_s)
    app.state.store = store
    app.state.replay = ReplayController(store)


def create_app(
    config: PipelineConfig | None = None,
    *,
    pool: asyncpg.Pool | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Pipeline configuration; defaults apply when omitted.
    pool:
        An already open pool. When given (tests, embedding in another
        process) the app uses it and leaves closing it to the caller;
        otherwise the lifespan opens one from ``config.database``.
    """
    config = config or PipelineConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if pool is not None:
            _install_services(app, pool, config)
            yield
            return
        db = config.database.build()
        await db.connect()
        _install_services(app, db.require_pool(), config)
        logger.info("Admin API connected to database %s", db.db_name)
        try:
            yield
        finally:
            await db.close()

    app = FastAPI(title="Tidings Admin API", version=__version__, lifespan=lifespan)
    app.router.redirect_slashes = False

    register_error_handlers(app)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(replay_router)
    app.include_router(jobs_router)
    return app
