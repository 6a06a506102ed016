"""Job management API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response

from jobfleet.api.deps import get_orchestrator, http_error
from jobfleet.domain import JobState
from jobfleet.errors import JobFleetError
from jobfleet.runtime.orchestrator import Orchestrator
from jobfleet.schemas.jobs import CandidateWorkerOut, JobConfigurationUpdate, JobCreate, JobOut

router = APIRouter()


@router.post("", response_model=JobOut, status_code=201)
async def create_job(body: JobCreate, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        job_id = await orchestrator.create_job(
            [d.to_domain() for d in body.demands],
            body.configuration,
            body.capacity,
            job_id=body.job_id,
        )
        job = await orchestrator.get_job(job_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return JobOut.from_domain(job)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    state: JobState | None = Query(None, description="Only jobs in this state"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        jobs = await orchestrator.list_jobs(state)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return [JobOut.from_domain(j) for j in jobs]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        job = await orchestrator.get_job(job_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return JobOut.from_domain(job)


@router.put("/{job_id}/configuration", response_model=JobOut)
async def update_configuration(
    job_id: str,
    body: JobConfigurationUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Replace the job payload; the owning worker receives it on its next heartbeat."""
    try:
        job = await orchestrator.update_job_configuration(job_id, body.configuration)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return JobOut.from_domain(job)


@router.post("/{job_id}/cancel", response_model=JobOut)
async def cancel_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        job = await orchestrator.cancel_job(job_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return JobOut.from_domain(job)


@router.post("/{job_id}/unassign", response_model=JobOut)
async def unassign_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        job = await orchestrator.unassign_job(job_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return JobOut.from_domain(job)


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        await orchestrator.delete_job(job_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@router.get("/{job_id}/candidates", response_model=list[CandidateWorkerOut])
async def candidate_workers(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Active workers that could run the job, best match first."""
    try:
        ranked = await orchestrator.candidate_workers(job_id)
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return [CandidateWorkerOut.from_ranked(r) for r in ranked]
