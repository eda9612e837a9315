"""
API Dependencies
================
Access to the running meter from request handlers.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from codex_meter.runtime import MeterRuntime


def get_runtime(request: Request) -> MeterRuntime:
    """Return the running meter, or 503 while it is starting or stopping."""
    runtime: MeterRuntime = request.app.state.runtime
    if not runtime.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meter is not running",
        )
    return runtime


RuntimeDep = Annotated[MeterRuntime, Depends(get_runtime)]
