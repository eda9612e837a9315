"""
Rebuild Endpoints
=================
Trigger a rebuild of the derived tables, or check them for drift.
"""

import structlog
from fastapi import APIRouter, HTTPException, status

from codex_meter.api.deps import RuntimeDep
from codex_meter.jobs.rebuild import RebuildInProgress, RebuildNotConfirmed
from codex_meter.schemas.usage import DriftRow, RebuildReport, RebuildRequest

router = APIRouter()
logger = structlog.get_logger()


@router.post(
    "",
    response_model=RebuildReport,
    summary="Rebuild aggregates",
    description="Truncate daily aggregates and recompute them from raw events. Requires confirm=true.",
)
async def rebuild(request: RebuildRequest, runtime: RuntimeDep) -> RebuildReport:
    try:
        return await runtime.controller.rebuild(confirm=request.confirm)
    except RebuildNotConfirmed as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except RebuildInProgress as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


@router.get(
    "/verify",
    response_model=list[DriftRow],
    summary="Check aggregates",
    description="List (date, model) rows whose aggregate differs from the raw events",
)
async def verify(runtime: RuntimeDep) -> list[DriftRow]:
    await runtime.controller.flush()
    return await runtime.controller.verify()
