"""FastAPI application entry point.

    uvicorn jobfleet.main:app --host 0.0.0.0 --port 8000

In SQLite dev mode the tables are created on startup and the lease sweep runs
inside the API process (``SWEEP_EMBEDDED``).  With PostgreSQL run
``alembic upgrade head`` first and start ``python -m jobfleet.sweeper_main``
as a separate process.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from jobfleet.api.heartbeat import router as heartbeat_router
from jobfleet.api.jobs import router as jobs_router
from jobfleet.api.workers import router as workers_router
from jobfleet.composition import FleetServices, compose
from jobfleet.config import Settings, settings as default_settings
from jobfleet.utils.logger import setup_logger
from jobfleet.utils.metrics import to_prometheus_text

logger = logging.getLogger("jobfleet.main")


def create_app(services: FleetServices | None = None, app_settings: Settings | None = None) -> FastAPI:
    """Build the application around *services* (composed from settings when omitted)."""
    app_settings = app_settings or (services.settings if services else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        fleet = services or compose(app_settings)
        app.state.services = fleet
        if app_settings.is_sqlite:
            await fleet.create_tables()
        # else: for PostgreSQL, run `alembic upgrade head` before starting the server
        if app_settings.SWEEP_EMBEDDED:
            fleet.sweeper.start()
        logger.info(
            "JobFleet started (dialect=%s, lease=%.0fs, embedded sweep=%s)",
            app_settings.FLEET_DB_DIALECT,
            app_settings.LEASE_DURATION_SECONDS,
            app_settings.SWEEP_EMBEDDED,
        )
        try:
            yield
        finally:
            fleet.sweeper.stop()
            if services is None:
                await fleet.dispose()

    app = FastAPI(
        title="JobFleet",
        description="Heartbeat-driven job orchestrator for a fleet of workers",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        # Available before startup so in-process test clients work without lifespan
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(heartbeat_router, prefix="/api/heartbeat", tags=["heartbeat"])
    app.include_router(jobs_router, prefix="/api/jobs", tags=["jobs"])
    app.include_router(workers_router, prefix="/api/workers", tags=["workers"])

    @app.get("/api/health")
    @app.get("/healthz", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    @app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
    async def prometheus_metrics():
        """Prometheus-compatible text exposition of in-process metrics.

        Example line: ``jobfleet_heartbeats_total 42``
        """
        return to_prometheus_text(app.state.services.metrics)

    return app


setup_logger(
    log_format=default_settings.LOG_FORMAT,
    log_level="DEBUG" if default_settings.DEBUG else default_settings.LOG_LEVEL,
)
app = create_app()
