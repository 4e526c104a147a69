"""FastAPI application factory."""
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from hackportal.api.routes import admin, dashboard, events, health
from hackportal.cache import TTLCache
from hackportal.config import get_settings
from hackportal.sync.ledger import SyncLedger
from hackportal.sync.scheduler import SyncScheduler, build_context
from hackportal.sync.writer import LocalStoreWriter

logger = logging.getLogger(__name__)


def create_app(
    engine=None,
    sync: Optional[SyncScheduler] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        engine: SQLAlchemy engine. Defaults to the module-level engine,
            resolved at startup.
        sync: Pre-built SyncScheduler (tests pass one wired to fakes).
            When None and the scheduler is enabled, one is built from settings.
        start_scheduler: Start the interval jobs on startup. Defaults to
            settings.sync_enabled.
    """
    settings = get_settings()
    if start_scheduler is None:
        start_scheduler = settings.sync_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from hackportal.db.engine import get_engine

        db = engine if engine is not None else get_engine()
        scheduler = sync
        owns_scheduler = False
        if scheduler is None and start_scheduler:
            scheduler = SyncScheduler(build_context(db, settings))
            owns_scheduler = True

        if scheduler is not None:
            cache = scheduler.ctx.cache
            ledger = scheduler.ctx.ledger
            writer = scheduler.ctx.writer
        else:
            cache = TTLCache(default_ttl=settings.cache_ttl_seconds)
            ledger = SyncLedger(db)
            writer = LocalStoreWriter(db, cache=cache)

        app.state.engine = db
        app.state.cache = cache
        app.state.ledger = ledger
        app.state.writer = writer
        app.state.sync = scheduler
        app.state.started_at = time.monotonic()

        if scheduler is not None and start_scheduler:
            scheduler.start()
        yield
        if scheduler is not None:
            await scheduler.shutdown()
            if owns_scheduler:
                await scheduler.ctx.source.aclose()
        logger.info("API shut down")

    app = FastAPI(
        title="Hackathon Portal API",
        description="Airtable mirror, dashboards and sync health",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])
    app.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
    app.include_router(events.router, prefix="/events", tags=["events"])

    return app


# Module-level app instance for uvicorn
app = create_app()
