"""Shared FastAPI dependencies and error mapping for the routers."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from jobfleet.composition import FleetServices
from jobfleet.errors import (
    DuplicateJobError,
    HeartbeatValidationError,
    InvalidJobStateError,
    JobFleetError,
    JobNotFoundError,
    TransientStoreError,
    WorkerNotFoundError,
)
from jobfleet.runtime.orchestrator import Orchestrator

logger = logging.getLogger("jobfleet.api")


def get_services(request: Request) -> FleetServices:
    return request.app.state.services


def get_orchestrator(request: Request) -> Orchestrator:
    return get_services(request).orchestrator


def http_error(exc: JobFleetError) -> HTTPException:
    """Map a domain error to the HTTP status callers should see."""
    if isinstance(exc, HeartbeatValidationError):
        return HTTPException(status_code=422, detail={"problems": exc.problems})
    if isinstance(exc, (JobNotFoundError, WorkerNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidJobStateError, DuplicateJobError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        logger.warning("Store temporarily unavailable: %s", exc)
        return HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": "1"})
    return HTTPException(status_code=500, detail=str(exc))
