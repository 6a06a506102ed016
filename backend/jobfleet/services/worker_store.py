"""Worker store — typed accessor for ``Worker`` records over a ``RecordStore``."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from typing import Any

from jobfleet.domain import Capability, Worker, WorkerStatus
from jobfleet.services.record_store import RecordFilter, RecordStore, Versioned, WriteResult


def worker_to_document(worker: Worker) -> dict[str, Any]:
    return {
        "worker_id": worker.worker_id,
        "status": worker.status.value,
        "capabilities_json": json.dumps(
            [{"key": c.key, "value": c.value} for c in sorted(worker.capabilities)]
        ),
        "capacity": worker.capacity,
        "last_heartbeat_at": worker.last_heartbeat_at,
        "lease_expires_at": worker.lease_expires_at,
        "created_at": worker.created_at,
        "updated_at": worker.last_heartbeat_at,
    }


def worker_from_document(doc: dict[str, Any]) -> Worker:
    caps = json.loads(doc.get("capabilities_json") or "[]")
    return Worker(
        worker_id=doc["worker_id"],
        capabilities=frozenset(Capability(c["key"], c["value"]) for c in caps),
        capacity=doc["capacity"],
        last_heartbeat_at=doc["last_heartbeat_at"],
        lease_expires_at=doc["lease_expires_at"],
        status=WorkerStatus(doc["status"]),
        created_at=doc["created_at"],
    )


class WorkerStore:
    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def get(self, worker_id: str) -> Versioned[Worker] | None:
        found = await self._records.get(worker_id)
        if found is None:
            return None
        return Versioned(worker_from_document(found.record), found.revision)

    async def list(
        self,
        *,
        status: WorkerStatus | None = None,
        expired_before: datetime | None = None,
    ) -> AsyncIterator[Versioned[Worker]]:
        equals: dict[str, Any] = {}
        before: dict[str, Any] = {}
        if status is not None:
            equals["status"] = status.value
        if expired_before is not None:
            before["lease_expires_at"] = expired_before
        async for item in self._records.list(RecordFilter(equals=equals, before=before)):
            yield Versioned(worker_from_document(item.record), item.revision)

    def list_expired(self, now: datetime) -> AsyncIterator[Versioned[Worker]]:
        """Active workers whose lease ran out before *now*."""
        return self.list(status=WorkerStatus.ACTIVE, expired_before=now)

    async def list_with_capabilities(
        self,
        required: Iterable[Capability],
        *,
        status: WorkerStatus | None = WorkerStatus.ACTIVE,
    ) -> AsyncIterator[Versioned[Worker]]:
        """Workers whose capabilities are a superset of *required*."""
        wanted = frozenset(required)
        async for item in self.list(status=status):
            if wanted <= item.record.capabilities:
                yield item

    async def create(self, worker: Worker) -> WriteResult:
        return await self._records.insert(worker.worker_id, worker_to_document(worker))

    async def write_if_revision_matches(self, worker: Worker, expected_revision: str) -> WriteResult:
        return await self._records.write_if_revision_matches(
            worker.worker_id, expected_revision, worker_to_document(worker)
        )
