"""
API
===
HTTP surface of the meter.
"""

from codex_meter.api.router import api_router, proxy_router

__all__ = ["api_router", "proxy_router"]
