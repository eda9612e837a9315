"""
Collectors
==========
Interchangeable sources of usage events. Each collector only produces
events into the channel; it never touches aggregates or prices.
"""

import asyncio
from typing import Optional, Protocol

import httpx

from codex_meter.collectors.proxy import ProxyCollector
from codex_meter.collectors.tailer import LogTailer
from codex_meter.config import Settings
from codex_meter.core.channel import UsageChannel
from codex_meter.services.store import EventStore


class Collector(Protocol):
    """Anything that can feed the usage channel until told to stop."""

    name: str

    async def run(self, stop: asyncio.Event) -> None: ...


def build_collector(
    settings: Settings,
    channel: UsageChannel,
    store: EventStore,
    upstream_client: Optional[httpx.AsyncClient] = None,
) -> Collector:
    """Create the collector selected by ``settings.collector_mode``."""
    if settings.collector_mode == "proxy":
        return ProxyCollector(
            channel,
            upstream_base_url=settings.upstream_base_url,
            public_base_path=settings.public_base_path,
            capture_limit_bytes=settings.capture_limit_bytes,
            max_request_body_bytes=settings.max_request_body_bytes,
            timeout=settings.upstream_timeout_seconds,
            client=upstream_client,
        )
    return LogTailer(
        settings.resolved_log_directory,
        channel,
        store,
        pattern=settings.log_file_pattern,
        poll_interval=settings.poll_interval_seconds,
    )


__all__ = ["Collector", "LogTailer", "ProxyCollector", "build_collector"]
