"""FastAPI server for the fleet health engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleetwatch import __version__
from fleetwatch.api.health_routes import broadcast_report, health_router
from fleetwatch.api.website_routes import website_router
from fleetwatch.config import settings
from fleetwatch.health.scanner import FleetScanner
from fleetwatch.health.scheduler import ScanScheduler
from fleetwatch.sites.registry import SiteRegistry
from fleetwatch.sites.store import SiteStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the site store and start the scan scheduler."""
    store = SiteStore(settings.db_path)
    app.state.site_store = store

    try:
        SiteRegistry(settings.sites_file).sync(store)
    except ValueError:
        logger.exception("Failed to import %s", settings.sites_file)

    removed = store.cleanup_old(days=settings.history_retention_days)
    if removed:
        logger.info("Pruned %d old health check rows", removed)

    scanner = FleetScanner(store, on_report=broadcast_report)
    scheduler = ScanScheduler(scanner, interval_seconds=settings.scan_interval_seconds)
    app.state.scan_scheduler = scheduler

    try:
        await scheduler.start()
    except Exception:
        logger.exception("Scan scheduler failed to start")

    yield

    # Shutdown
    await scheduler.stop()
    store.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="fleetwatch - Website Fleet Health",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(website_router, prefix="/api")
    app.include_router(health_router, prefix="/api")

    @app.get("/api/status")
    def status() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
