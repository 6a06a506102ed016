"""Worker heartbeat API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from jobfleet.api.deps import get_orchestrator, http_error
from jobfleet.errors import JobFleetError
from jobfleet.runtime.orchestrator import Orchestrator
from jobfleet.schemas.heartbeat import HeartbeatIn, HeartbeatOut

router = APIRouter()


@router.post("", response_model=HeartbeatOut)
async def heartbeat(body: HeartbeatIn, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Renew the worker's lease, apply its job reports and hand out work.

    The response lists every job the worker currently owns; ``configuration``
    is only filled in when ``configuration_included`` is true.
    """
    try:
        result = await orchestrator.handle_heartbeat(body.to_domain())
    except JobFleetError as exc:
        raise http_error(exc) from exc
    return HeartbeatOut.from_domain(result)
