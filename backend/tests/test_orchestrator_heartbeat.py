"""Tests for heartbeat handling: assignment, reconciliation and delivery."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import beat, caps, exact, report, wildcard

from jobfleet.domain import Job, JobState, WorkerStatus
from jobfleet.errors import HeartbeatValidationError, InvalidJobStateError
from jobfleet.runtime.orchestrator import Orchestrator, _delivery, apply_report
from jobfleet.utils.metrics import FleetMetrics


def _ids(result) -> list[str]:
    return [j.job_id for j in result.jobs]


# ── Assignment ──────────────────────────────────────────────────


class TestAssignment:
    @pytest.mark.asyncio
    async def test_matching_worker_receives_created_job(self, orchestrator, clock):
        job_id = await orchestrator.create_job([exact("region", "eu")], {"task": "collect"})

        result = await orchestrator.handle_heartbeat(beat("W1", 2, caps(region="eu")))

        assert _ids(result) == [job_id]
        delivery = result.jobs[0]
        assert delivery.state == JobState.ASSIGNED
        assert delivery.configuration_included is True
        assert delivery.configuration == {"task": "collect"}
        assert delivery.lease_token
        assert result.lease_expires_at == clock() + timedelta(seconds=60)

        job = await orchestrator.get_job(job_id)
        assert job.state == JobState.ASSIGNED
        assert job.assignment.worker_id == "W1"
        assert job.assignment.lease_token == delivery.lease_token

    @pytest.mark.asyncio
    async def test_non_matching_worker_gets_nothing(self, orchestrator):
        job_id = await orchestrator.create_job([exact("region", "eu")])
        result = await orchestrator.handle_heartbeat(beat("W1", 2, caps(region="us")))
        assert result.jobs == []
        assert (await orchestrator.get_job(job_id)).state == JobState.CREATED

    @pytest.mark.asyncio
    async def test_more_specific_job_assigned_first(self, orchestrator, clock):
        await orchestrator.create_job([], job_id="plain")
        clock.advance(1)
        await orchestrator.create_job([exact("region", "eu"), wildcard("gpu")], job_id="specific")

        result = await orchestrator.handle_heartbeat(beat("W1", 1, caps(region="eu", gpu="a100")))

        assert _ids(result) == ["specific"]

    @pytest.mark.asyncio
    async def test_concurrent_heartbeats_assign_job_once(self, orchestrator):
        job_id = await orchestrator.create_job([exact("region", "eu")])

        r1, r2 = await asyncio.gather(
            orchestrator.handle_heartbeat(beat("W1", 1, caps(region="eu"))),
            orchestrator.handle_heartbeat(beat("W2", 1, caps(region="eu"))),
        )

        winners = [r.worker_id for r in (r1, r2) if job_id in _ids(r)]
        assert len(winners) == 1
        job = await orchestrator.get_job(job_id)
        assert job.assignment.worker_id == winners[0]

    @pytest.mark.asyncio
    async def test_lost_race_skips_to_next_candidate(self, orchestrator, services, monkeypatch, clock):
        await orchestrator.create_job([], job_id="J1")
        clock.advance(1)
        await orchestrator.create_job([], job_id="J2")
        snapshot = [item async for item in services.jobs.list_created()]

        # W1 claims J1 after W2 has already listed the created jobs
        await orchestrator.handle_heartbeat(beat("W1", 1))

        async def stale_listing():
            for item in snapshot:
                yield item

        monkeypatch.setattr(services.jobs, "list_created", stale_listing)
        result = await orchestrator.handle_heartbeat(beat("W2", 1))

        assert _ids(result) == ["J2"]
        assert (await orchestrator.get_job("J1")).assignment.worker_id == "W1"
        assert services.metrics.get_counter("assignment_conflicts_total") == 1


# ── Capacity ────────────────────────────────────────────────────


class TestCapacity:
    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self, orchestrator):
        for i in range(3):
            await orchestrator.create_job([], job_id=f"J{i}")

        first = await orchestrator.handle_heartbeat(beat("W1", 2))
        second = await orchestrator.handle_heartbeat(beat("W1", 2))

        assert len(first.jobs) == 2
        assert sorted(_ids(second)) == sorted(_ids(first))
        created = await orchestrator.list_jobs(JobState.CREATED)
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_finished_job_frees_a_slot(self, orchestrator):
        for i in range(2):
            await orchestrator.create_job([], job_id=f"J{i}")
        first = await orchestrator.handle_heartbeat(beat("W1", 1))
        done = first.jobs[0].job_id

        result = await orchestrator.handle_heartbeat(
            beat("W1", 1, reports=[report(done, JobState.CANCELLED)])
        )

        assert len(result.jobs) == 1
        assert result.jobs[0].job_id != done
        assert (await orchestrator.get_job(done)).state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_jobs_needing_more_slots_are_skipped(self, orchestrator, clock):
        await orchestrator.create_job([], capacity=3, job_id="big")
        clock.advance(1)
        await orchestrator.create_job([], capacity=1, job_id="small")

        result = await orchestrator.handle_heartbeat(beat("W1", 2))

        assert _ids(result) == ["small"]
        assert (await orchestrator.get_job("big")).state == JobState.CREATED

    @pytest.mark.asyncio
    async def test_cancelling_jobs_still_hold_their_slot(self, orchestrator):
        await orchestrator.create_job([], job_id="J1")
        await orchestrator.handle_heartbeat(beat("W1", 1))
        await orchestrator.cancel_job("J1")
        await orchestrator.create_job([], job_id="J2")

        result = await orchestrator.handle_heartbeat(beat("W1", 1))

        assert _ids(result) == ["J1"]
        assert result.jobs[0].state == JobState.CANCELLING
        assert (await orchestrator.get_job("J2")).state == JobState.CREATED


# ── Configuration delivery ──────────────────────────────────────


class TestConfigurationDelivery:
    @pytest.mark.asyncio
    async def test_payload_delivered_once_per_revision(self, orchestrator):
        job_id = await orchestrator.create_job([], {"v": 1})

        first = await orchestrator.handle_heartbeat(beat("W1"))
        second = await orchestrator.handle_heartbeat(beat("W1"))
        assert first.jobs[0].configuration_included is True
        assert second.jobs[0].configuration_included is False
        assert second.jobs[0].configuration is None
        assert second.jobs[0].configuration_revision == 1

        updated = await orchestrator.update_job_configuration(job_id, {"v": 2})
        assert updated.configuration_revision == 2

        third = await orchestrator.handle_heartbeat(beat("W1"))
        fourth = await orchestrator.handle_heartbeat(beat("W1"))
        assert third.jobs[0].configuration_included is True
        assert third.jobs[0].configuration == {"v": 2}
        assert third.jobs[0].configuration_revision == 2
        assert fourth.jobs[0].configuration_included is False

        job = await orchestrator.get_job(job_id)
        assert job.assignment.last_delivered_revision == 2

    @pytest.mark.asyncio
    async def test_same_payload_does_not_bump_revision(self, orchestrator):
        job_id = await orchestrator.create_job([], {"v": 1})
        job = await orchestrator.update_job_configuration(job_id, {"v": 1})
        assert job.configuration_revision == 1


# ── Reconciliation ──────────────────────────────────────────────


class TestReconcile:
    @pytest.mark.asyncio
    async def test_processing_report_and_activity(self, orchestrator, clock):
        job_id = await orchestrator.create_job([])
        await orchestrator.handle_heartbeat(beat("W1"))
        activity = clock() + timedelta(seconds=5)
        clock.advance(10)

        result = await orchestrator.handle_heartbeat(
            beat("W1", reports=[report(job_id, JobState.PROCESSING, activity)])
        )

        assert result.jobs[0].state == JobState.PROCESSING
        job = await orchestrator.get_job(job_id)
        assert job.state == JobState.PROCESSING
        assert job.last_activity_at == activity

    @pytest.mark.asyncio
    async def test_report_from_non_owner_is_ignored(self, orchestrator):
        job_id = await orchestrator.create_job([])
        await orchestrator.handle_heartbeat(beat("W1"))

        result = await orchestrator.handle_heartbeat(
            beat("W2", reports=[report(job_id, JobState.CANCELLED)])
        )

        assert result.jobs == []
        job = await orchestrator.get_job(job_id)
        assert job.state == JobState.ASSIGNED
        assert job.assignment.worker_id == "W1"

    @pytest.mark.asyncio
    async def test_report_for_unknown_job_is_ignored(self, orchestrator):
        result = await orchestrator.handle_heartbeat(
            beat("W1", reports=[report("nope", JobState.PROCESSING)])
        )
        assert result.jobs == []

    @pytest.mark.asyncio
    async def test_cancelling_resolves_when_worker_confirms(self, orchestrator):
        job_id = await orchestrator.create_job([])
        await orchestrator.handle_heartbeat(beat("W1"))
        await orchestrator.cancel_job(job_id)

        result = await orchestrator.handle_heartbeat(
            beat("W1", reports=[report(job_id, JobState.CANCELLED)])
        )

        assert result.jobs == []
        job = await orchestrator.get_job(job_id)
        assert job.state == JobState.CANCELLED
        assert job.assignment is None

    @pytest.mark.asyncio
    async def test_deleted_report_clears_assignment(self, orchestrator):
        job_id = await orchestrator.create_job([])
        await orchestrator.handle_heartbeat(beat("W1"))
        await orchestrator.handle_heartbeat(beat("W1", reports=[report(job_id, JobState.DELETED)]))
        job = await orchestrator.get_job(job_id)
        assert job.state == JobState.DELETED
        assert job.assignment is None


class TestApplyReport:
    def _owned(self, clock, state=JobState.ASSIGNED) -> Job:
        job = Job("J1", created_at=clock(), updated_at=clock()).assigned_to("W1", "tok", clock())
        return replace(job, state=state)

    def test_assigned_to_processing(self, clock):
        updated = apply_report(self._owned(clock), report("J1", JobState.PROCESSING), clock())
        assert updated.state == JobState.PROCESSING
        assert updated.assignment is not None

    def test_processing_report_on_processing_is_noop(self, clock):
        job = self._owned(clock, JobState.PROCESSING)
        assert apply_report(job, report("J1", JobState.PROCESSING), clock()) is None

    def test_created_report_releases_job(self, clock):
        updated = apply_report(self._owned(clock, JobState.PROCESSING), report("J1", JobState.CREATED), clock())
        assert updated.state == JobState.CREATED
        assert updated.assignment is None

    def test_created_report_on_cancelling_cancels(self, clock):
        updated = apply_report(self._owned(clock, JobState.CANCELLING), report("J1", JobState.CREATED), clock())
        assert updated.state == JobState.CANCELLED
        assert updated.assignment is None

    def test_older_activity_is_ignored(self, clock):
        job = self._owned(clock, JobState.PROCESSING)
        newer = replace(job, last_activity_at=clock())
        stale = report("J1", JobState.PROCESSING, clock() - timedelta(seconds=30))
        assert apply_report(newer, stale, clock()) is None


class TestDelivery:
    def test_unassigned_job_cannot_be_delivered(self, clock):
        job = Job("J1", created_at=clock(), updated_at=clock())
        with pytest.raises(InvalidJobStateError):
            _delivery(job, include_configuration=True)

    def test_delivery_carries_the_lease(self, clock):
        job = Job("J1", created_at=clock(), updated_at=clock()).assigned_to("W1", "tok", clock())
        delivery = _delivery(job, include_configuration=False)
        assert delivery.lease_token == "tok"
        assert delivery.configuration is None


# ── Validation and worker record ────────────────────────────────


class TestValidation:
    @pytest.mark.parametrize(
        "heartbeat, fragment",
        [
            (beat(""), "worker_id"),
            (beat("W1", capacity=0), "capacity"),
            (beat("W1", reports=[report("J1", JobState.PROCESSING), report("J1", JobState.CANCELLED)]), "duplicate"),
            (beat("W1", capabilities=caps(**{"": "x"})), "capability"),
        ],
    )
    @pytest.mark.asyncio
    async def test_rejected_without_writes(self, orchestrator, heartbeat, fragment):
        with pytest.raises(HeartbeatValidationError) as exc_info:
            await orchestrator.handle_heartbeat(heartbeat)
        assert any(fragment in p for p in exc_info.value.problems)
        assert await orchestrator.list_workers() == []


class TestWorkerRecord:
    @pytest.mark.asyncio
    async def test_first_heartbeat_registers_worker(self, orchestrator, clock):
        await orchestrator.handle_heartbeat(beat("W1", 3, caps(region="eu")))
        worker = await orchestrator.get_worker("W1")
        assert worker.status == WorkerStatus.ACTIVE
        assert worker.capacity == 3
        assert worker.capabilities == caps(region="eu")
        assert worker.lease_expires_at == worker.last_heartbeat_at + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_capabilities_and_lease(self, orchestrator, clock):
        await orchestrator.handle_heartbeat(beat("W1", 1, caps(region="eu")))
        clock.advance(20)
        await orchestrator.handle_heartbeat(beat("W1", 4, caps(region="us")))
        worker = await orchestrator.get_worker("W1")
        assert worker.capacity == 4
        assert worker.capabilities == caps(region="us")
        assert worker.last_heartbeat_at == clock()
        assert worker.lease_expires_at == clock() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_heartbeat_clock_never_moves_backwards(self, orchestrator, clock):
        await orchestrator.handle_heartbeat(beat("W1"))
        first = await orchestrator.get_worker("W1")
        clock.advance(-30)
        await orchestrator.handle_heartbeat(beat("W1"))
        second = await orchestrator.get_worker("W1")
        assert second.last_heartbeat_at == first.last_heartbeat_at
        assert second.lease_expires_at == first.lease_expires_at

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, orchestrator, services):
        await orchestrator.create_job([])
        await orchestrator.handle_heartbeat(beat("W1"))
        assert services.metrics.get_counter("heartbeats_total") == 1
        assert services.metrics.get_counter("jobs_assigned_total") == 1


class TestHeartbeatMetrics:
    @pytest.mark.asyncio
    async def test_duration_samples_stay_bounded(self, services, clock):
        metrics = FleetMetrics(window=16)
        orchestrator = Orchestrator(services.jobs, services.workers, metrics=metrics, clock=clock)

        for _ in range(40):
            await orchestrator.handle_heartbeat(beat("W1"))

        assert metrics.get_counter("heartbeats_total") == 40
        assert len(metrics.histograms["heartbeat_duration_seconds"]) == 16
        assert metrics.get_histogram_stats("heartbeat_duration_seconds")["count"] == 40
