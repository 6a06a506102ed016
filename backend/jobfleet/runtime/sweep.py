"""Lease sweep — marks silent workers lost and takes their jobs back.

Every ``sweep_interval_seconds`` the background task runs one pass:

1. **Expire** — every ``active`` worker whose ``lease_expires_at`` is in the
   past is conditionally written to ``lost``.
2. **Reclaim** — every job in ``assigned``/``processing``/``cancelling`` whose
   owner is ``lost`` (or has no worker record at all) is released: back to
   ``created`` with the assignment cleared, or to ``cancelled`` when it was
   being cancelled.  The release is conditional on the job's revision and on
   the lease token the job was examined with, so a job reassigned in the
   meantime is left alone.

A pass is idempotent: already-lost workers and already-released jobs are
skipped by state checks.  A record that fails is logged and counted, and the
pass moves on; the loop itself survives any exception.

Pass 2 runs even when pass 1 found nothing, so jobs orphaned by a crash in the
middle of an earlier pass are still picked up.

The owner is read again for every job.  A heartbeat that lands between that
read and the job write can still list a job that is then released; the
worker's next report for it is ignored because the job no longer names it as
owner, and the job is matched again like any other ``created`` job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from jobfleet.domain import Job, JobState, Worker, WorkerStatus, utcnow
from jobfleet.errors import JobFleetError
from jobfleet.runtime.optimistic import optimistic_update
from jobfleet.runtime.options import OrchestratorOptions
from jobfleet.services.job_store import JobStore
from jobfleet.services.record_store import Versioned
from jobfleet.services.worker_store import WorkerStore
from jobfleet.utils.metrics import FleetMetrics

logger = logging.getLogger("jobfleet.sweep")


@dataclass
class SweepReport:
    workers_lost: int = 0
    jobs_released: int = 0
    jobs_cancelled: int = 0
    failures: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.workers_lost or self.jobs_released or self.jobs_cancelled)


class LeaseSweeper:
    """Runs the lease sweep once on demand, or periodically as an asyncio task.

    Usage::

        sweeper = LeaseSweeper(jobs, workers, options)
        sweeper.start()           # begins the periodic pass
        ...
        sweeper.stop()
    """

    def __init__(
        self,
        jobs: JobStore,
        workers: WorkerStore,
        options: OrchestratorOptions | None = None,
        *,
        metrics: FleetMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs = jobs
        self._workers = workers
        self._options = options or OrchestratorOptions()
        self._metrics = metrics or FleetMetrics()
        self._clock = clock
        self._task: asyncio.Task[Any] | None = None

    # ── Public API ────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic sweep (idempotent)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="lease-sweep")
        logger.info(
            "Lease sweep started: interval=%.1fs lease=%.1fs",
            self._options.sweep_interval_seconds, self._options.lease_duration_seconds,
        )

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Lease sweep stopped")

    async def sweep_once(self) -> SweepReport:
        """Run one full pass and return what it changed."""
        now = self._clock()
        report = SweepReport()
        await self._expire_workers(now, report)
        await self._reclaim_jobs(now, report)
        if report.changed or report.failures:
            logger.info(
                "Sweep pass: %d workers lost, %d jobs released, %d cancelled, %d failures",
                report.workers_lost, report.jobs_released, report.jobs_cancelled, report.failures,
            )
        return report

    # ── Background loop ───────────────────────────────────────

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Lease sweep pass failed")
            await asyncio.sleep(self._options.sweep_interval_seconds)

    # ── Pass 1: expire worker leases ──────────────────────────

    async def _expire_workers(self, now: datetime, report: SweepReport) -> None:
        expired = [item async for item in self._workers.list_expired(now)]
        for item in expired:
            try:
                if await self._mark_lost(item, now):
                    report.workers_lost += 1
                    self._metrics.record_worker_lost()
            except JobFleetError:
                logger.exception("Could not mark worker %s lost", item.record.worker_id)
                report.failures += 1
                self._metrics.record_sweep_failure("worker")

    async def _mark_lost(self, item: Versioned[Worker], now: datetime) -> bool:
        worker_id = item.record.worker_id

        def mutate(worker: Worker) -> Worker | None:
            # A heartbeat may have renewed the lease since the listing
            if worker.status != WorkerStatus.ACTIVE or not worker.lease_expired(now):
                return None
            return replace(worker, status=WorkerStatus.LOST)

        outcome = await optimistic_update(
            lambda: self._workers.get(worker_id),
            mutate,
            self._workers.write_if_revision_matches,
            attempts=self._options.conflict_retries,
            backoff_seconds=self._options.retry_backoff_seconds,
            what=f"worker {worker_id}",
            initial=item,
        )
        if outcome.updated:
            logger.warning(
                "Worker %s lost: lease expired at %s",
                worker_id, item.record.lease_expires_at.isoformat(),
            )
        return outcome.updated

    # ── Pass 2: reclaim orphaned jobs ─────────────────────────

    async def _reclaim_jobs(self, now: datetime, report: SweepReport) -> None:
        owned = [item async for item in self._jobs.list_assigned()]
        for item in owned:
            job = item.record
            owner = job.assignment.worker_id
            try:
                # Re-read per job: the owner may have heartbeated since its previous job
                if not await self._owner_gone(owner):
                    continue
                released = await self._release(item, now)
            except JobFleetError:
                logger.exception("Could not reclaim job %s from worker %s", job.job_id, owner)
                report.failures += 1
                self._metrics.record_sweep_failure("job")
                continue
            if released is None:
                continue
            if released.state == JobState.CANCELLED:
                report.jobs_cancelled += 1
            else:
                report.jobs_released += 1
            self._metrics.record_job_released(released.state.value)

    async def _owner_gone(self, worker_id: str) -> bool:
        stored = await self._workers.get(worker_id)
        return stored is None or stored.record.status == WorkerStatus.LOST

    async def _release(self, item: Versioned[Job], now: datetime) -> Job | None:
        job_id = item.record.job_id
        examined = item.record.assignment

        def mutate(job: Job) -> Job | None:
            # Only release the assignment we looked at
            if not job.is_active or job.assignment is None:
                return None
            if job.assignment.lease_token != examined.lease_token:
                return None
            return job.released(now)

        outcome = await optimistic_update(
            lambda: self._jobs.get(job_id),
            mutate,
            self._jobs.write_if_revision_matches,
            attempts=self._options.conflict_retries,
            backoff_seconds=self._options.retry_backoff_seconds,
            what=f"job {job_id}",
            initial=item,
        )
        if not outcome.updated:
            return None
        released = outcome.current.record
        logger.info(
            "Reclaimed job %s from lost worker %s -> %s",
            job_id, examined.worker_id, released.state.value,
        )
        return released
