"""Job store — typed accessor for ``Job`` records over a ``RecordStore``."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

from jobfleet.domain import ACTIVE_STATES, Assignment, Demand, Job, JobState, MatchKind
from jobfleet.services.record_store import RecordFilter, RecordStore, Versioned, WriteResult


def _dump_demands(demands: Iterable[Demand]) -> str:
    return json.dumps(
        [{"key": d.key, "value": d.value, "match_kind": d.match_kind.value} for d in demands]
    )


def _load_demands(raw: str | None) -> tuple[Demand, ...]:
    if not raw:
        return ()
    return tuple(
        Demand(key=d["key"], value=d.get("value"), match_kind=MatchKind(d.get("match_kind", "exact")))
        for d in json.loads(raw)
    )


def job_to_document(job: Job) -> dict[str, Any]:
    a = job.assignment
    return {
        "job_id": job.job_id,
        "state": job.state.value,
        "demands_json": _dump_demands(job.demands),
        "configuration_json": json.dumps(job.configuration) if job.configuration is not None else None,
        "configuration_revision": job.configuration_revision,
        "required_slots": job.required_slots,
        "assigned_worker_id": a.worker_id if a else None,
        "lease_token": a.lease_token if a else None,
        "assigned_at": a.assigned_at if a else None,
        "last_delivered_revision": a.last_delivered_revision if a else None,
        "last_activity_at": job.last_activity_at,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def job_from_document(doc: dict[str, Any]) -> Job:
    assignment = None
    if doc.get("assigned_worker_id"):
        assignment = Assignment(
            worker_id=doc["assigned_worker_id"],
            lease_token=doc["lease_token"],
            assigned_at=doc["assigned_at"],
            last_delivered_revision=doc.get("last_delivered_revision") or 0,
        )
    raw_config = doc.get("configuration_json")
    return Job(
        job_id=doc["job_id"],
        demands=_load_demands(doc.get("demands_json")),
        configuration=json.loads(raw_config) if raw_config is not None else None,
        configuration_revision=doc["configuration_revision"],
        state=JobState(doc["state"]),
        assignment=assignment,
        required_slots=doc.get("required_slots") or 1,
        created_at=doc["created_at"],
        updated_at=doc["updated_at"],
        last_activity_at=doc.get("last_activity_at"),
    )


class JobStore:
    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def get(self, job_id: str) -> Versioned[Job] | None:
        found = await self._records.get(job_id)
        if found is None:
            return None
        return Versioned(job_from_document(found.record), found.revision)

    async def list(
        self,
        *,
        states: Iterable[JobState] | None = None,
        worker_id: str | None = None,
    ) -> AsyncIterator[Versioned[Job]]:
        """Lazily yield jobs, optionally restricted to *states* and/or an owner."""
        equals: dict[str, Any] = {}
        one_of: dict[str, list[str]] = {}
        if states is not None:
            one_of["state"] = [s.value for s in states]
        if worker_id is not None:
            equals["assigned_worker_id"] = worker_id
        async for item in self._records.list(RecordFilter(equals=equals, one_of=one_of)):
            yield Versioned(job_from_document(item.record), item.revision)

    def list_created(self) -> AsyncIterator[Versioned[Job]]:
        return self.list(states=[JobState.CREATED])

    def list_assigned(self, worker_id: str | None = None) -> AsyncIterator[Versioned[Job]]:
        """Jobs currently owned by a worker (by *worker_id* when given)."""
        return self.list(states=ACTIVE_STATES, worker_id=worker_id)

    async def create(self, job: Job) -> WriteResult:
        return await self._records.insert(job.job_id, job_to_document(job))

    async def write_if_revision_matches(self, job: Job, expected_revision: str) -> WriteResult:
        return await self._records.write_if_revision_matches(
            job.job_id, expected_revision, job_to_document(job)
        )

    async def delete_if_revision_matches(self, job_id: str, expected_revision: str) -> WriteResult:
        return await self._records.delete_if_revision_matches(job_id, expected_revision)
