"""
Proxy Passthrough
=================
Catch-all route that hands every non-meter request to the proxy collector.
"""

from fastapi import APIRouter, Request, Response

from codex_meter.api.deps import RuntimeDep
from codex_meter.collectors.proxy import PROXY_METHODS

router = APIRouter()


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def passthrough(path: str, request: Request, runtime: RuntimeDep) -> Response:
    if runtime.proxy is None:
        return Response(status_code=404)
    return await runtime.proxy.forward(request)
