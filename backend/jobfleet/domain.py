"""Domain records — jobs, workers and the transient heartbeat."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so they compare with stored timestamps."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enumerations ────────────────────────────────────────────────


class JobState(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    DELETED = "deleted"


# States in which a job is owned by a worker and carries an assignment.
ACTIVE_STATES: frozenset[JobState] = frozenset(
    {JobState.ASSIGNED, JobState.PROCESSING, JobState.CANCELLING}
)
TERMINAL_STATES: frozenset[JobState] = frozenset({JobState.CANCELLED, JobState.DELETED})


class WorkerStatus(str, Enum):
    ACTIVE = "active"
    LOST = "lost"


class MatchKind(str, Enum):
    EXACT = "exact"
    WILDCARD = "wildcard"


# ── Value types ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Demand:
    key: str
    value: str | None = None
    match_kind: MatchKind = MatchKind.EXACT


@dataclass(frozen=True, order=True)
class Capability:
    key: str
    value: str


@dataclass(frozen=True)
class Assignment:
    worker_id: str
    lease_token: str
    assigned_at: datetime
    # configuration_revision last handed to the worker (0 = never delivered)
    last_delivered_revision: int = 0


# ── Job ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Job:
    job_id: str
    demands: tuple[Demand, ...] = ()
    configuration: Any = None
    configuration_revision: int = 1
    state: JobState = JobState.CREATED
    assignment: Assignment | None = None
    required_slots: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def owned_by(self, worker_id: str) -> bool:
        return self.assignment is not None and self.assignment.worker_id == worker_id

    def assigned_to(self, worker_id: str, lease_token: str, now: datetime) -> Job:
        """Return this job assigned to *worker_id*; the payload counts as delivered."""
        return replace(
            self,
            state=JobState.ASSIGNED,
            assignment=Assignment(
                worker_id=worker_id,
                lease_token=lease_token,
                assigned_at=now,
                last_delivered_revision=self.configuration_revision,
            ),
            updated_at=now,
        )

    def released(self, now: datetime) -> Job:
        """Return this job with its assignment cleared.

        A job that was being cancelled cannot be handed to anyone else, so it
        resolves to ``cancelled`` instead of going back to ``created``.
        """
        state = JobState.CANCELLED if self.state == JobState.CANCELLING else JobState.CREATED
        return replace(self, state=state, assignment=None, updated_at=now)

    def finished(self, state: JobState, now: datetime) -> Job:
        return replace(self, state=state, assignment=None, updated_at=now)


# ── Worker ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Worker:
    worker_id: str
    capabilities: frozenset[Capability] = frozenset()
    capacity: int = 1
    last_heartbeat_at: datetime = field(default_factory=utcnow)
    lease_expires_at: datetime = field(default_factory=utcnow)
    status: WorkerStatus = WorkerStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)

    def lease_expired(self, now: datetime) -> bool:
        return self.lease_expires_at < now


# ── Heartbeat (transient) ───────────────────────────────────────


@dataclass(frozen=True)
class JobStatusReport:
    job_id: str
    observed_state: JobState
    last_activity_at: datetime | None = None


@dataclass(frozen=True)
class Heartbeat:
    worker_id: str
    capabilities: frozenset[Capability] = frozenset()
    capacity: int = 1
    job_status_reports: tuple[JobStatusReport, ...] = ()


# ── Heartbeat response ──────────────────────────────────────────


@dataclass(frozen=True)
class JobDelivery:
    job_id: str
    state: JobState
    demands: tuple[Demand, ...]
    configuration_revision: int
    configuration_included: bool
    configuration: Any
    lease_token: str
    assigned_at: datetime


@dataclass(frozen=True)
class HeartbeatResult:
    worker_id: str
    lease_expires_at: datetime
    jobs: list[JobDelivery] = field(default_factory=list)
