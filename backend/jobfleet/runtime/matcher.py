"""Demand matcher — decides whether, and how well, a worker satisfies a job.

Pure functions only: no store access, no clock, no randomness.  The same
(demands, capabilities) pair always produces the same ``MatchResult``, and the
rankings are total orders, so the matcher can be tested without a store.

Rules
-----
- ``exact`` demand:    worker advertises a capability with identical key AND value.
- ``wildcard`` demand: worker advertises any capability with that key.
- A job is satisfiable iff every demand is satisfied; no demands matches anyone.
- Score = number of demands, so more specific jobs win when ranking.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from jobfleet.domain import Capability, Demand, Job, MatchKind, Worker


@dataclass(frozen=True)
class MatchResult:
    satisfied: bool
    score: int = 0


UNSATISFIED = MatchResult(satisfied=False)


# ── Per-demand checks ───────────────────────────────────────────
#
# Evaluated in order; the first check that accepts the demand wins.


def _exact_check(demand: Demand, capabilities: frozenset[Capability]) -> bool:
    return (
        demand.match_kind == MatchKind.EXACT
        and demand.value is not None
        and Capability(demand.key, demand.value) in capabilities
    )


def _wildcard_check(demand: Demand, capabilities: frozenset[Capability]) -> bool:
    return demand.match_kind == MatchKind.WILDCARD and any(
        cap.key == demand.key for cap in capabilities
    )


_DEMAND_CHECKS: tuple[Callable[[Demand, frozenset[Capability]], bool], ...] = (
    _exact_check,
    _wildcard_check,
)


def demand_satisfied(demand: Demand, capabilities: frozenset[Capability]) -> bool:
    for check in _DEMAND_CHECKS:
        if check(demand, capabilities):
            return True
    return False


def match(demands: Iterable[Demand], capabilities: Iterable[Capability]) -> MatchResult:
    caps = frozenset(capabilities)
    demands = tuple(demands)
    for demand in demands:
        if not demand_satisfied(demand, caps):
            return UNSATISFIED
    return MatchResult(satisfied=True, score=len(demands))


# ── Ranking ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RankedJob:
    job: Job
    score: int


@dataclass(frozen=True)
class RankedWorker:
    worker: Worker
    score: int
    free_slots: int


def rank_jobs(jobs: Iterable[Job], capabilities: Iterable[Capability]) -> list[RankedJob]:
    """Jobs the worker can run, best first.

    Higher score first; ties go to the earliest ``created_at``, then ``job_id``.
    """
    caps = frozenset(capabilities)
    ranked = []
    for job in jobs:
        result = match(job.demands, caps)
        if result.satisfied:
            ranked.append(RankedJob(job=job, score=result.score))
    ranked.sort(key=lambda r: (-r.score, r.job.created_at, r.job.job_id))
    return ranked


def rank_workers(
    job: Job,
    workers: Iterable[Worker],
    used_slots: dict[str, int] | None = None,
) -> list[RankedWorker]:
    """Workers able to run *job*, best first.

    Higher score first, then more free capacity (``used_slots`` maps worker id
    to slots already taken), then ``worker_id``.
    """
    used_slots = used_slots or {}
    ranked = []
    for worker in workers:
        result = match(job.demands, worker.capabilities)
        if result.satisfied:
            free = worker.capacity - used_slots.get(worker.worker_id, 0)
            ranked.append(RankedWorker(worker=worker, score=result.score, free_slots=free))
    ranked.sort(key=lambda r: (-r.score, -r.free_slots, r.worker.worker_id))
    return ranked
