"""Shared fixtures for backend tests.

Each test gets its own SQLite file under ``tmp_path`` (WAL mode, so several
sessions can be open at once) and a manually driven clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from jobfleet.composition import compose
from jobfleet.config import Settings
from jobfleet.domain import Capability, Demand, Heartbeat, JobState, JobStatusReport, MatchKind


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ── Builders ────────────────────────────────────────────────────


def caps(**tags: str) -> frozenset[Capability]:
    return frozenset(Capability(k, v) for k, v in tags.items())


def exact(key: str, value: str) -> Demand:
    return Demand(key, value, MatchKind.EXACT)


def wildcard(key: str) -> Demand:
    return Demand(key, None, MatchKind.WILDCARD)


def beat(worker_id: str, capacity: int = 1, capabilities=frozenset(), reports=()) -> Heartbeat:
    return Heartbeat(
        worker_id=worker_id,
        capabilities=frozenset(capabilities),
        capacity=capacity,
        job_status_reports=tuple(reports),
    )


def report(job_id: str, state: JobState, last_activity_at: datetime | None = None) -> JobStatusReport:
    return JobStatusReport(job_id, state, last_activity_at)


# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        FLEET_DB_URL=f"sqlite+aiosqlite:///{tmp_path / 'fleet.db'}",
        LEASE_DURATION_SECONDS=60.0,
        HEARTBEAT_INTERVAL_SECONDS=15.0,
        SWEEP_INTERVAL_SECONDS=15.0,
        SWEEP_EMBEDDED=False,
        STORE_RETRY_BACKOFF_SECONDS=0.0,
        STORE_PAGE_SIZE=2,
    )


@pytest.fixture
async def services(settings, clock):
    fleet = compose(settings, clock=clock)
    await fleet.create_tables()
    yield fleet
    await fleet.dispose()


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
def sweeper(services):
    return services.sweeper


@pytest.fixture
async def client(services):
    """Async test client wired to the per-test services."""
    from jobfleet.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
