"""Pydantic models for worker inspection."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from jobfleet.domain import Worker, WorkerStatus


class CapabilityOut(BaseModel):
    key: str
    value: str


class WorkerOut(BaseModel):
    worker_id: str
    status: WorkerStatus
    capacity: int
    capabilities: list[CapabilityOut] = []
    last_heartbeat_at: datetime
    lease_expires_at: datetime
    created_at: datetime

    @classmethod
    def from_domain(cls, worker: Worker) -> "WorkerOut":
        return cls(
            worker_id=worker.worker_id,
            status=worker.status,
            capacity=worker.capacity,
            capabilities=[CapabilityOut(key=c.key, value=c.value) for c in sorted(worker.capabilities)],
            last_heartbeat_at=worker.last_heartbeat_at,
            lease_expires_at=worker.lease_expires_at,
            created_at=worker.created_at,
        )
