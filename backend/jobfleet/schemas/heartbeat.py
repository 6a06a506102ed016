"""Pydantic models for the worker heartbeat."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobfleet.domain import (
    Capability,
    Heartbeat,
    HeartbeatResult,
    JobDelivery,
    JobState,
    JobStatusReport,
)
from jobfleet.schemas.jobs import DemandOut


class CapabilityIn(BaseModel):
    key: str
    value: str


class JobStatusReportIn(BaseModel):
    job_id: str
    observed_state: JobState
    last_activity_at: datetime | None = None


class HeartbeatIn(BaseModel):
    worker_id: str = Field(min_length=1, max_length=256)
    capabilities: list[CapabilityIn] = Field(default_factory=list)
    capacity: int
    job_status_reports: list[JobStatusReportIn] = Field(default_factory=list)

    def to_domain(self) -> Heartbeat:
        return Heartbeat(
            worker_id=self.worker_id,
            capabilities=frozenset(Capability(c.key, c.value) for c in self.capabilities),
            capacity=self.capacity,
            job_status_reports=tuple(
                JobStatusReport(r.job_id, r.observed_state, r.last_activity_at)
                for r in self.job_status_reports
            ),
        )


class JobAssignmentOut(BaseModel):
    job_id: str
    state: JobState
    demands: list[DemandOut] = []
    configuration_revision: int
    configuration_included: bool
    configuration: Any = None
    lease_token: str
    assigned_at: datetime

    @classmethod
    def from_domain(cls, delivery: JobDelivery) -> "JobAssignmentOut":
        return cls(
            job_id=delivery.job_id,
            state=delivery.state,
            demands=[DemandOut.from_domain(d) for d in delivery.demands],
            configuration_revision=delivery.configuration_revision,
            configuration_included=delivery.configuration_included,
            configuration=delivery.configuration,
            lease_token=delivery.lease_token,
            assigned_at=delivery.assigned_at,
        )


class HeartbeatOut(BaseModel):
    worker_id: str
    lease_expires_at: datetime
    jobs: list[JobAssignmentOut] = []

    @classmethod
    def from_domain(cls, result: HeartbeatResult) -> "HeartbeatOut":
        return cls(
            worker_id=result.worker_id,
            lease_expires_at=result.lease_expires_at,
            jobs=[JobAssignmentOut.from_domain(j) for j in result.jobs],
        )
