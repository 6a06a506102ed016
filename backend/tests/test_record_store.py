"""Tests for the SQL record store and the typed job/worker stores."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import caps, exact

from jobfleet.domain import Job, JobState, Worker, WorkerStatus
from jobfleet.errors import StoreUnavailableError
from jobfleet.services.record_store import RecordFilter, WriteStatus


def _job(job_id: str, clock, **kwargs) -> Job:
    now = clock()
    return Job(job_id=job_id, created_at=now, updated_at=now, **kwargs)


class TestConditionalWrites:
    @pytest.mark.asyncio
    async def test_insert_then_get(self, services, clock):
        job = _job("j1", clock, demands=(exact("site", "A"),), configuration={"k": 1})
        result = await services.jobs.create(job)
        assert result.ok
        stored = await services.jobs.get("j1")
        assert stored.revision == result.revision
        assert stored.record.demands == job.demands
        assert stored.record.configuration == {"k": 1}
        assert stored.record.created_at == clock()

    @pytest.mark.asyncio
    async def test_insert_existing_is_conflict(self, services, clock):
        await services.jobs.create(_job("j1", clock))
        result = await services.jobs.create(_job("j1", clock))
        assert result.status == WriteStatus.CONFLICT

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, services):
        assert await services.jobs.get("nope") is None

    @pytest.mark.asyncio
    async def test_write_with_current_revision_replaces_it(self, services, clock):
        first = await services.jobs.create(_job("j1", clock))
        stored = await services.jobs.get("j1")
        updated = stored.record.assigned_to("w1", "tok", clock())
        result = await services.jobs.write_if_revision_matches(updated, first.revision)
        assert result.ok
        assert result.revision != first.revision
        again = await services.jobs.get("j1")
        assert again.revision == result.revision
        assert again.record.state == JobState.ASSIGNED
        assert again.record.assignment.worker_id == "w1"

    @pytest.mark.asyncio
    async def test_stale_revision_is_conflict(self, services, clock):
        first = await services.jobs.create(_job("j1", clock))
        stored = await services.jobs.get("j1")
        await services.jobs.write_if_revision_matches(
            stored.record.assigned_to("w1", "t1", clock()), first.revision
        )
        result = await services.jobs.write_if_revision_matches(
            stored.record.assigned_to("w2", "t2", clock()), first.revision
        )
        assert result.conflict
        assert (await services.jobs.get("j1")).record.assignment.worker_id == "w1"

    @pytest.mark.asyncio
    async def test_write_missing_is_not_found(self, services, clock):
        result = await services.jobs.write_if_revision_matches(_job("ghost", clock), "whatever")
        assert result.not_found

    @pytest.mark.asyncio
    async def test_conditional_delete(self, services, clock):
        first = await services.jobs.create(_job("j1", clock))
        assert (await services.jobs.delete_if_revision_matches("j1", "stale")).conflict
        assert (await services.jobs.delete_if_revision_matches("j1", first.revision)).ok
        assert await services.jobs.get("j1") is None
        assert (await services.jobs.delete_if_revision_matches("j1", first.revision)).not_found


class TestListing:
    @pytest.mark.asyncio
    async def test_list_pages_through_everything(self, services, clock):
        # page size is 2 in the test settings
        for i in range(5):
            await services.jobs.create(_job(f"j{i}", clock))
        ids = [item.record.job_id async for item in services.jobs.list()]
        assert ids == ["j0", "j1", "j2", "j3", "j4"]

    @pytest.mark.asyncio
    async def test_list_created_and_assigned(self, services, clock):
        for i in range(3):
            await services.jobs.create(_job(f"j{i}", clock))
        stored = await services.jobs.get("j1")
        await services.jobs.write_if_revision_matches(
            stored.record.assigned_to("w1", "tok", clock()), stored.revision
        )
        created = [item.record.job_id async for item in services.jobs.list_created()]
        owned = [item.record.job_id async for item in services.jobs.list_assigned("w1")]
        others = [item.record.job_id async for item in services.jobs.list_assigned("w2")]
        assert created == ["j0", "j2"]
        assert owned == ["j1"]
        assert others == []

    @pytest.mark.asyncio
    async def test_expired_workers(self, services, clock):
        now = clock()
        fresh = Worker("fresh", last_heartbeat_at=now, lease_expires_at=now + timedelta(seconds=60))
        stale = Worker("stale", last_heartbeat_at=now, lease_expires_at=now - timedelta(seconds=1))
        lost = Worker(
            "lost", last_heartbeat_at=now, lease_expires_at=now - timedelta(seconds=1),
            status=WorkerStatus.LOST,
        )
        for w in (fresh, stale, lost):
            assert (await services.workers.create(w)).ok
        expired = [item.record.worker_id async for item in services.workers.list_expired(now)]
        assert expired == ["stale"]

    @pytest.mark.asyncio
    async def test_capability_superset_filter(self, services, clock):
        now = clock()
        await services.workers.create(Worker("a", capabilities=caps(site="A", gpu="x"), lease_expires_at=now))
        await services.workers.create(Worker("b", capabilities=caps(site="A"), lease_expires_at=now))
        await services.workers.create(Worker("c", capabilities=caps(site="B", gpu="x"), lease_expires_at=now))
        found = [
            item.record.worker_id
            async for item in services.workers.list_with_capabilities(caps(site="A"))
        ]
        assert found == ["a", "b"]
        stored = await services.workers.get("a")
        assert stored.record.capabilities == caps(site="A", gpu="x")

    @pytest.mark.asyncio
    async def test_raw_filter_on_record_store(self, services, clock):
        await services.jobs.create(_job("j1", clock))
        records = services.jobs._records
        matches = [item async for item in records.list(RecordFilter(equals={"state": "created"}))]
        assert len(matches) == 1
        none = [item async for item in records.list(RecordFilter(one_of={"state": ["deleted"]}))]
        assert none == []


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_unreachable_database_raises_store_unavailable(self, tmp_path):
        from jobfleet.composition import compose
        from jobfleet.config import Settings

        # Parent directory does not exist, so SQLite cannot open the file
        bad = Settings(FLEET_DB_URL=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
        fleet = compose(bad)
        try:
            with pytest.raises(StoreUnavailableError):
                await fleet.jobs.get("j1")
        finally:
            await fleet.dispose()
