"""Pydantic models for job management."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from jobfleet.domain import Demand, Job, JobState, MatchKind
from jobfleet.runtime.matcher import RankedWorker


class DemandIn(BaseModel):
    key: str = Field(min_length=1)
    value: str | None = None
    match_kind: MatchKind = MatchKind.EXACT

    @model_validator(mode="after")
    def _exact_needs_value(self) -> "DemandIn":
        if self.match_kind == MatchKind.EXACT and self.value is None:
            raise ValueError(f"exact demand '{self.key}' needs a value")
        return self

    def to_domain(self) -> Demand:
        return Demand(key=self.key, value=self.value, match_kind=self.match_kind)


class DemandOut(BaseModel):
    key: str
    value: str | None = None
    match_kind: MatchKind

    @classmethod
    def from_domain(cls, demand: Demand) -> "DemandOut":
        return cls(key=demand.key, value=demand.value, match_kind=demand.match_kind)


class JobCreate(BaseModel):
    job_id: str | None = Field(default=None, min_length=1, max_length=64)
    demands: list[DemandIn] = Field(default_factory=list)
    configuration: Any = None
    capacity: int = Field(default=1, ge=1)
    """Number of worker capacity slots the job occupies."""


class JobConfigurationUpdate(BaseModel):
    """Body for PUT /api/jobs/{id}/configuration."""
    configuration: Any = None


class AssignmentOut(BaseModel):
    worker_id: str
    lease_token: str
    assigned_at: datetime
    last_delivered_revision: int


class JobOut(BaseModel):
    job_id: str
    state: JobState
    demands: list[DemandOut] = []
    configuration: Any = None
    configuration_revision: int
    required_slots: int
    assignment: AssignmentOut | None = None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime | None = None

    @classmethod
    def from_domain(cls, job: Job) -> "JobOut":
        a = job.assignment
        return cls(
            job_id=job.job_id,
            state=job.state,
            demands=[DemandOut.from_domain(d) for d in job.demands],
            configuration=job.configuration,
            configuration_revision=job.configuration_revision,
            required_slots=job.required_slots,
            assignment=AssignmentOut(
                worker_id=a.worker_id,
                lease_token=a.lease_token,
                assigned_at=a.assigned_at,
                last_delivered_revision=a.last_delivered_revision,
            ) if a else None,
            created_at=job.created_at,
            updated_at=job.updated_at,
            last_activity_at=job.last_activity_at,
        )


class CandidateWorkerOut(BaseModel):
    worker_id: str
    score: int
    free_slots: int
    capacity: int

    @classmethod
    def from_ranked(cls, ranked: RankedWorker) -> "CandidateWorkerOut":
        return cls(
            worker_id=ranked.worker.worker_id,
            score=ranked.score,
            free_slots=ranked.free_slots,
            capacity=ranked.worker.capacity,
        )
