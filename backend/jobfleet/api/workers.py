"""Worker inspection API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from jobfleet.api.deps import get_orchestrator, http_error
from jobfleet.domain import WorkerStatus
from jobfleet.errors import JobFleetError
from jobfleet.runtime.orchestrator import Orchestrator
from jobfleet.schemas.workers import WorkerOut

router = APIRouter()


@router.get("", response_model=list[WorkerOut])
async def list_workers(
    status: WorkerStatus | None = Query(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        workers = await orchestrator.list_workers(status)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return [WorkerOut.from_domain(w) for w in workers]


@router.get("/{worker_id}", response_model=WorkerOut)
async def get_worker(worker_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        worker = await orchestrator.get_worker(worker_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return WorkerOut.from_domain(worker)
