"""
Health Check Endpoints
======================
Liveness and readiness checks.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from codex_meter import __version__

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    database: str
    collector: str | None = None
    queued: int = 0
    dropped: int = 0
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Liveness check endpoint.
    Returns OK if the service is running.
    """
    return HealthResponse(status="ok", version=__version__)


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """
    Readiness check endpoint.
    Checks database connectivity and reports channel pressure.
    """
    runtime = request.app.state.runtime
    if not runtime.started:
        return ReadinessResponse(status="starting", database="unknown", version=__version__)

    try:
        await runtime.database.ping()
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    return ReadinessResponse(
        status="ok" if db_status == "connected" else "degraded",
        database=db_status,
        collector=runtime.collector.name,
        queued=runtime.channel.qsize(),
        dropped=runtime.channel.dropped,
        version=__version__,
    )
