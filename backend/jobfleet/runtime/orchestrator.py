"""Job orchestrator — heartbeat handling and job lifecycle operations.

Heartbeat flow
--------------
  validate            malformed heartbeats are rejected before any write
    ↓
  upsert worker       renew capabilities, capacity and lease (bounded retry)
    ↓
  reconcile reports   apply the worker's observed job states to jobs it owns
    ↓
  assign              rank ``created`` jobs with the matcher and claim the best
                      ones up to the worker's free slots
    ↓
  respond             every job the worker owns; the configuration payload
                      only when its revision was not delivered yet

Assignment safety
-----------------
A candidate is claimed with a conditional write against the revision read when
the ``created`` jobs were listed.  If two heartbeats race for the same job both
write against that same revision; exactly one succeeds.  The loser sees a
conflict and moves on to its next candidate — it never retries the same job in
the same heartbeat.  No in-process lock is held at any point; the conditional
write on a single job record is the only serialization point.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from jobfleet.domain import (
    Capability,
    Demand,
    Heartbeat,
    HeartbeatResult,
    Job,
    JobDelivery,
    JobState,
    JobStatusReport,
    MatchKind,
    Worker,
    WorkerStatus,
    ensure_utc,
    utcnow,
)
from jobfleet.errors import (
    ConflictRetriesExhaustedError,
    DuplicateJobError,
    HeartbeatValidationError,
    InvalidJobStateError,
    JobNotFoundError,
    WorkerNotFoundError,
)
from jobfleet.runtime.matcher import RankedWorker, rank_jobs, rank_workers
from jobfleet.runtime.optimistic import UpdateStatus, backoff_delay, optimistic_update
from jobfleet.runtime.options import OrchestratorOptions
from jobfleet.services.job_store import JobStore
from jobfleet.services.record_store import Versioned
from jobfleet.services.worker_store import WorkerStore
from jobfleet.utils.logger import ctx_job_id, ctx_worker_id
from jobfleet.utils.metrics import FleetMetrics

logger = logging.getLogger("jobfleet.orchestrator")

Clock = Callable[[], datetime]


def _new_lease_token() -> str:
    return uuid.uuid4().hex


def _new_job_id() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────────────


def validate_heartbeat(heartbeat: Heartbeat) -> None:
    """Raise ``HeartbeatValidationError`` listing everything wrong with *heartbeat*."""
    problems: list[str] = []

    if not isinstance(heartbeat.worker_id, str) or not heartbeat.worker_id.strip():
        problems.append("worker_id is required")

    capacity = heartbeat.capacity
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        problems.append(f"capacity must be a positive integer (got {capacity!r})")

    if any(not cap.key for cap in heartbeat.capabilities):
        problems.append("capability keys must not be empty")

    seen: set[str] = set()
    duplicates: set[str] = set()
    for report in heartbeat.job_status_reports:
        if not report.job_id:
            problems.append("job status reports must carry a job_id")
            continue
        if report.job_id in seen:
            duplicates.add(report.job_id)
        seen.add(report.job_id)
        if not isinstance(report.observed_state, JobState):
            problems.append(f"unknown state {report.observed_state!r} reported for job {report.job_id}")
    if duplicates:
        problems.append("duplicate job ids in status reports: " + ", ".join(sorted(duplicates)))

    if problems:
        raise HeartbeatValidationError(problems)


def apply_report(job: Job, report: JobStatusReport, now: datetime) -> Job | None:
    """Return *job* updated with the worker's observation, or None if nothing changes.

    Only meaningful for an active job owned by the reporting worker.
    """
    observed = report.observed_state
    updated = job
    if observed == JobState.PROCESSING and job.state == JobState.ASSIGNED:
        updated = replace(job, state=JobState.PROCESSING, updated_at=now)
    elif observed in (JobState.CANCELLED, JobState.DELETED):
        updated = job.finished(observed, now)
    elif observed == JobState.CREATED:
        # The worker handed the job back
        updated = job.released(now)

    activity = ensure_utc(report.last_activity_at)
    if activity is not None and (updated.last_activity_at is None or activity > updated.last_activity_at):
        updated = replace(updated, last_activity_at=activity)

    return None if updated == job else updated


def _delivery(job: Job, include_configuration: bool) -> JobDelivery:
    if job.assignment is None:
        raise InvalidJobStateError(job.job_id, job.state.value, "deliver")
    return JobDelivery(
        job_id=job.job_id,
        state=job.state,
        demands=job.demands,
        configuration_revision=job.configuration_revision,
        configuration_included=include_configuration,
        configuration=job.configuration if include_configuration else None,
        lease_token=job.assignment.lease_token,
        assigned_at=job.assignment.assigned_at,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────────────────


class Orchestrator:
    """Owns job/worker state transitions.  Safe to call concurrently."""

    def __init__(
        self,
        jobs: JobStore,
        workers: WorkerStore,
        options: OrchestratorOptions | None = None,
        *,
        metrics: FleetMetrics | None = None,
        clock: Clock = utcnow,
        lease_tokens: Callable[[], str] = _new_lease_token,
    ) -> None:
        self._jobs = jobs
        self._workers = workers
        self._options = options or OrchestratorOptions()
        self._metrics = metrics or FleetMetrics()
        self._clock = clock
        self._lease_tokens = lease_tokens

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self._options.lease_duration_seconds)

    async def _update_job(self, job_id: str, mutate: Callable[[Job], Job | None]):
        return await optimistic_update(
            lambda: self._jobs.get(job_id),
            mutate,
            self._jobs.write_if_revision_matches,
            attempts=self._options.conflict_retries,
            backoff_seconds=self._options.retry_backoff_seconds,
            what=f"job {job_id}",
        )

    # ── Heartbeat ─────────────────────────────────────────────

    async def handle_heartbeat(self, heartbeat: Heartbeat) -> HeartbeatResult:
        validate_heartbeat(heartbeat)

        started = time.monotonic()
        token = ctx_worker_id.set(heartbeat.worker_id)
        try:
            now = self._clock()
            worker = (await self._upsert_worker(heartbeat, now)).record
            for report in heartbeat.job_status_reports:
                await self._reconcile_report(worker.worker_id, report, now)

            owned = [item async for item in self._jobs.list_assigned(worker.worker_id)]
            assigned = await self._assign(worker, owned, now)
            jobs = await self._deliveries(worker.worker_id, owned)
            jobs.extend(_delivery(item.record, include_configuration=True) for item in assigned)
        finally:
            ctx_worker_id.reset(token)

        self._metrics.record_heartbeat(time.monotonic() - started, len(assigned))
        return HeartbeatResult(
            worker_id=worker.worker_id,
            lease_expires_at=worker.lease_expires_at,
            jobs=jobs,
        )

    async def _upsert_worker(self, heartbeat: Heartbeat, now: datetime) -> Versioned[Worker]:
        """Create or refresh the worker record and renew its lease."""
        attempts = self._options.conflict_retries
        for attempt in range(1, attempts + 1):
            current = await self._workers.get(heartbeat.worker_id)
            if current is None:
                worker = Worker(
                    worker_id=heartbeat.worker_id,
                    capabilities=heartbeat.capabilities,
                    capacity=heartbeat.capacity,
                    last_heartbeat_at=now,
                    lease_expires_at=now + self.lease_duration,
                    status=WorkerStatus.ACTIVE,
                    created_at=now,
                )
                result = await self._workers.create(worker)
            else:
                # Never move the heartbeat clock backwards
                beat = max(now, current.record.last_heartbeat_at)
                worker = replace(
                    current.record,
                    capabilities=heartbeat.capabilities,
                    capacity=heartbeat.capacity,
                    last_heartbeat_at=beat,
                    lease_expires_at=beat + self.lease_duration,
                    status=WorkerStatus.ACTIVE,
                )
                result = await self._workers.write_if_revision_matches(worker, current.revision)

            if result.ok:
                if current is None:
                    logger.info(
                        "Registered worker %s (capacity=%d, %d capabilities)",
                        worker.worker_id, worker.capacity, len(worker.capabilities),
                    )
                elif current.record.status == WorkerStatus.LOST:
                    logger.info("Worker %s is heartbeating again after losing its lease", worker.worker_id)
                return Versioned(worker, result.revision)

            logger.debug(
                "Worker %s upsert hit %s (attempt %d/%d)",
                heartbeat.worker_id, result.status.value, attempt, attempts,
            )
            if attempt < attempts:
                await asyncio.sleep(backoff_delay(attempt, self._options.retry_backoff_seconds))

        raise ConflictRetriesExhaustedError(f"worker {heartbeat.worker_id}", attempts)

    async def _reconcile_report(self, worker_id: str, report: JobStatusReport, now: datetime) -> None:
        stored = await self._jobs.get(report.job_id)
        if stored is None or not (stored.record.is_active and stored.record.owned_by(worker_id)):
            # Stale report from a worker that no longer owns the job
            logger.debug("Ignoring report for job %s from worker %s: not owned", report.job_id, worker_id)
            return

        def mutate(job: Job) -> Job | None:
            if not (job.is_active and job.owned_by(worker_id)):
                return None
            return apply_report(job, report, now)

        token = ctx_job_id.set(report.job_id)
        try:
            outcome = await optimistic_update(
                lambda: self._jobs.get(report.job_id),
                mutate,
                self._jobs.write_if_revision_matches,
                attempts=self._options.conflict_retries,
                backoff_seconds=self._options.retry_backoff_seconds,
                what=f"job {report.job_id}",
                initial=stored,
            )
        except ConflictRetriesExhaustedError:
            logger.warning(
                "Could not record status of job %s reported by %s; next heartbeat will retry",
                report.job_id, worker_id,
            )
            return
        finally:
            ctx_job_id.reset(token)

        if outcome.updated and outcome.current.record.state != stored.record.state:
            logger.info(
                "Job %s %s -> %s (reported by %s)",
                report.job_id, stored.record.state.value, outcome.current.record.state.value, worker_id,
            )

    async def _assign(
        self, worker: Worker, owned: list[Versioned[Job]], now: datetime
    ) -> list[Versioned[Job]]:
        """Claim the best-ranked ``created`` jobs that fit the worker's free slots."""
        free = worker.capacity - sum(item.record.required_slots for item in owned)
        if free <= 0:
            return []

        candidates = {item.record.job_id: item async for item in self._jobs.list_created()}
        if not candidates:
            return []

        assigned: list[Versioned[Job]] = []
        for ranked in rank_jobs((c.record for c in candidates.values()), worker.capabilities):
            if free <= 0:
                break
            job = ranked.job
            if job.required_slots > free:
                continue
            claimed = job.assigned_to(worker.worker_id, self._lease_tokens(), now)
            result = await self._jobs.write_if_revision_matches(claimed, candidates[job.job_id].revision)
            if not result.ok:
                # Another heartbeat won this job; never retried within this heartbeat
                self._metrics.record_assignment_conflict()
                logger.debug(
                    "Worker %s lost the race for job %s (%s)",
                    worker.worker_id, job.job_id, result.status.value,
                )
                continue
            assigned.append(Versioned(claimed, result.revision))
            free -= job.required_slots
            logger.info("Assigned job %s to worker %s (score=%d)", job.job_id, worker.worker_id, ranked.score)

        return assigned

    async def _deliveries(self, worker_id: str, owned: list[Versioned[Job]]) -> list[JobDelivery]:
        """Describe already-owned jobs, attaching configuration not yet delivered."""

        def mark_delivered(job: Job) -> Job | None:
            if not (job.is_active and job.owned_by(worker_id)):
                return None
            if job.assignment.last_delivered_revision == job.configuration_revision:
                return None
            return replace(
                job,
                assignment=replace(job.assignment, last_delivered_revision=job.configuration_revision),
            )

        deliveries: list[JobDelivery] = []
        for item in owned:
            job = item.record
            if job.assignment.last_delivered_revision == job.configuration_revision:
                deliveries.append(_delivery(job, include_configuration=False))
                continue
            try:
                outcome = await optimistic_update(
                    lambda: self._jobs.get(job.job_id),
                    mark_delivered,
                    self._jobs.write_if_revision_matches,
                    attempts=self._options.conflict_retries,
                    backoff_seconds=self._options.retry_backoff_seconds,
                    what=f"job {job.job_id}",
                    initial=item,
                )
            except ConflictRetriesExhaustedError:
                logger.warning(
                    "Could not record configuration delivery for job %s; it will be sent again",
                    job.job_id,
                )
                deliveries.append(_delivery(job, include_configuration=True))
                continue
            if outcome.current is None:
                continue
            current = outcome.current.record
            if not (current.is_active and current.owned_by(worker_id)):
                continue
            deliveries.append(_delivery(current, include_configuration=outcome.updated))
        return deliveries

    # ── Job lifecycle ─────────────────────────────────────────

    async def create_job(
        self,
        demands: Iterable[Demand] = (),
        configuration: Any = None,
        capacity: int = 1,
        *,
        job_id: str | None = None,
    ) -> str:
        """Create a job in ``created``.  *capacity* is the number of worker slots it takes."""
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1 (got {capacity})")
        demands = tuple(demands)
        for demand in demands:
            if demand.match_kind == MatchKind.EXACT and demand.value is None:
                raise ValueError(f"exact demand {demand.key!r} needs a value")
        now = self._clock()
        job = Job(
            job_id=job_id or _new_job_id(),
            demands=demands,
            configuration=configuration,
            configuration_revision=1,
            state=JobState.CREATED,
            required_slots=capacity,
            created_at=now,
            updated_at=now,
        )
        result = await self._jobs.create(job)
        if not result.ok:
            raise DuplicateJobError(job.job_id)
        logger.info("Created job %s (%d demands, slots=%d)", job.job_id, len(job.demands), capacity)
        return job.job_id

    async def update_job_configuration(self, job_id: str, configuration: Any) -> Job:
        """Replace the payload; bumps ``configuration_revision`` when it changed."""
        now = self._clock()

        def mutate(job: Job) -> Job | None:
            if job.is_terminal:
                raise InvalidJobStateError(job_id, job.state.value, "reconfigure")
            if job.configuration == configuration:
                return None
            return replace(
                job,
                configuration=configuration,
                configuration_revision=job.configuration_revision + 1,
                updated_at=now,
            )

        outcome = await self._update_job(job_id, mutate)
        if outcome.status == UpdateStatus.MISSING:
            raise JobNotFoundError(job_id)
        if outcome.updated:
            logger.info(
                "Job %s configuration now at revision %d",
                job_id, outcome.current.record.configuration_revision,
            )
        return outcome.current.record

    async def cancel_job(self, job_id: str) -> Job:
        """Request cancellation.

        Unassigned jobs are cancelled at once; owned jobs are flagged
        ``cancelling`` and resolve when the worker confirms on a heartbeat.
        """
        now = self._clock()

        def mutate(job: Job) -> Job | None:
            if job.state == JobState.CREATED:
                return replace(job, state=JobState.CANCELLED, updated_at=now)
            if job.state in (JobState.ASSIGNED, JobState.PROCESSING):
                return replace(job, state=JobState.CANCELLING, updated_at=now)
            if job.state in (JobState.CANCELLING, JobState.CANCELLED):
                return None
            raise InvalidJobStateError(job_id, job.state.value, "cancel")

        outcome = await self._update_job(job_id, mutate)
        if outcome.status == UpdateStatus.MISSING:
            raise JobNotFoundError(job_id)
        if outcome.updated:
            logger.info("Job %s -> %s", job_id, outcome.current.record.state.value)
        return outcome.current.record

    async def unassign_job(self, job_id: str) -> Job:
        """Take an assigned job back so any qualifying worker can pick it up."""
        now = self._clock()

        def mutate(job: Job) -> Job | None:
            if job.state == JobState.CREATED:
                return None
            if job.state in (JobState.ASSIGNED, JobState.PROCESSING):
                return job.released(now)
            raise InvalidJobStateError(job_id, job.state.value, "unassign")

        outcome = await self._update_job(job_id, mutate)
        if outcome.status == UpdateStatus.MISSING:
            raise JobNotFoundError(job_id)
        if outcome.updated:
            logger.info("Job %s released back to created", job_id)
        return outcome.current.record

    async def delete_job(self, job_id: str) -> None:
        """Remove a job.  Only allowed once it is ``cancelled`` or ``deleted``."""
        attempts = self._options.conflict_retries
        for attempt in range(1, attempts + 1):
            stored = await self._jobs.get(job_id)
            if stored is None:
                raise JobNotFoundError(job_id)
            if not stored.record.is_terminal:
                raise InvalidJobStateError(job_id, stored.record.state.value, "delete")
            result = await self._jobs.delete_if_revision_matches(job_id, stored.revision)
            if result.ok or result.not_found:
                logger.info("Deleted job %s", job_id)
                return
            if attempt < attempts:
                await asyncio.sleep(backoff_delay(attempt, self._options.retry_backoff_seconds))
        raise ConflictRetriesExhaustedError(f"job {job_id}", attempts)

    # ── Queries ───────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Job:
        stored = await self._jobs.get(job_id)
        if stored is None:
            raise JobNotFoundError(job_id)
        return stored.record

    async def list_jobs(self, state: JobState | None = None) -> list[Job]:
        states = [state] if state is not None else None
        return [item.record async for item in self._jobs.list(states=states)]

    async def get_worker(self, worker_id: str) -> Worker:
        stored = await self._workers.get(worker_id)
        if stored is None:
            raise WorkerNotFoundError(worker_id)
        return stored.record

    async def list_workers(self, status: WorkerStatus | None = None) -> list[Worker]:
        return [item.record async for item in self._workers.list(status=status)]

    async def candidate_workers(self, job_id: str) -> list[RankedWorker]:
        """Active workers able to run the job, best first."""
        job = await self.get_job(job_id)
        exact = [
            Capability(d.key, d.value)
            for d in job.demands
            if d.match_kind == MatchKind.EXACT and d.value is not None
        ]
        workers = [item.record async for item in self._workers.list_with_capabilities(exact)]
        used: dict[str, int] = defaultdict(int)
        async for item in self._jobs.list_assigned():
            used[item.record.assignment.worker_id] += item.record.required_slots
        return rank_workers(job, workers, used)
