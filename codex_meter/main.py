"""
Codex Meter Service
===================
FastAPI application entry point.
"""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from codex_meter import __version__
from codex_meter.api import api_router, proxy_router
from codex_meter.config import Settings, get_settings
from codex_meter.runtime import MeterRuntime

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """
    Configure structured logging.

    With ``log_file`` set, records go to that file only so a terminal view
    stays clean.
    """
    if settings.log_file is not None:
        log_file = settings.log_file.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        format="%(message)s",
        level=settings.log_level,
        handlers=[handler],
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(colors=settings.log_file is None),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def create_app(
    settings: Optional[Settings] = None,
    upstream_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the application.

    Meter routes live under ``/_meter`` so they never shadow the proxied API.
    In proxy mode every other path is forwarded upstream.
    """
    settings = settings or get_settings()
    runtime = MeterRuntime(settings, upstream_client=upstream_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        # Startup
        logger.info("Starting Codex Meter", collector=settings.collector_mode)
        await runtime.start()

        yield

        # Shutdown
        logger.info("Shutting down Codex Meter")
        await runtime.stop()

    app = FastAPI(
        title="Codex Meter API",
        description="Local usage and cost meter for the Codex CLI",
        version=__version__,
        docs_url="/_meter/docs",
        redoc_url=None,
        openapi_url="/_meter/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime

    # Mount Prometheus metrics endpoint
    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router, prefix="/_meter")
    if settings.collector_mode == "proxy":
        app.include_router(proxy_router)

    return app


def run(settings: Optional[Settings] = None) -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = settings or get_settings()
    configure_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.listen_host,
        port=settings.listen_port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    run()
