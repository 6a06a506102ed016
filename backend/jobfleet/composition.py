"""Composition root — builds the object graph once, explicitly.

Everything is constructed here and handed down by reference: one engine, one
record store per table, one metrics collector.  Nothing below this module
reads global settings.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobfleet.config import Settings
from jobfleet.db.engine import build_engine, build_session_factory
from jobfleet.db.models import Base, JobRow, WorkerRow
from jobfleet.domain import utcnow
from jobfleet.runtime.orchestrator import Orchestrator
from jobfleet.runtime.sweep import LeaseSweeper
from jobfleet.services.job_store import JobStore
from jobfleet.services.record_store import SqlRecordStore
from jobfleet.services.worker_store import WorkerStore
from jobfleet.utils.metrics import FleetMetrics


@dataclass
class FleetServices:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    jobs: JobStore
    workers: WorkerStore
    metrics: FleetMetrics
    orchestrator: Orchestrator
    sweeper: LeaseSweeper

    async def create_tables(self) -> None:
        """Create missing tables (SQLite dev mode and tests; Postgres uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        self.sweeper.stop()
        await self.engine.dispose()


def compose(
    settings: Settings,
    *,
    clock: Callable[[], datetime] = utcnow,
    engine: AsyncEngine | None = None,
) -> FleetServices:
    engine = engine or build_engine(settings)
    session_factory = build_session_factory(engine)
    page_size = settings.STORE_PAGE_SIZE

    jobs = JobStore(SqlRecordStore(session_factory, JobRow, page_size=page_size))
    workers = WorkerStore(SqlRecordStore(session_factory, WorkerRow, page_size=page_size))
    metrics = FleetMetrics()
    options = settings.orchestrator_options()

    return FleetServices(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        jobs=jobs,
        workers=workers,
        metrics=metrics,
        orchestrator=Orchestrator(jobs, workers, options, metrics=metrics, clock=clock),
        sweeper=LeaseSweeper(jobs, workers, options, metrics=metrics, clock=clock),
    )
