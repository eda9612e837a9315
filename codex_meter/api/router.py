"""
API Router
==========
Main API router combining all endpoint modules.
"""

from fastapi import APIRouter

from codex_meter.api.endpoints import health, pricing, proxy, rebuild, usage

api_router = APIRouter()

# Include endpoint routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(usage.router, prefix="/usage", tags=["Usage"])
api_router.include_router(pricing.router, prefix="/pricing", tags=["Pricing"])
api_router.include_router(rebuild.router, prefix="/rebuild", tags=["Rebuild"])

# Registered last so every meter route matches first
proxy_router = proxy.router
