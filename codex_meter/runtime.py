"""
Runtime
=======
Builds and supervises the long-running components: database, store,
channel, Aggregator, collector, rebuild controller and scheduler.

Shutdown order matters: collectors stop producing first, the channel then
gives in-flight sends a bounded grace period, and the Aggregator drains the
channel and flushes staged deltas before the database is closed.
"""

import asyncio
from datetime import date
from typing import Optional

import httpx
import structlog

from codex_meter.collectors import Collector, LogTailer, ProxyCollector, build_collector
from codex_meter.config import Settings
from codex_meter.core.channel import UsageChannel
from codex_meter.core.pricing import load_seed_rules
from codex_meter.database import Database
from codex_meter.jobs.rebuild import RebuildController
from codex_meter.jobs.scheduler import JobScheduler
from codex_meter.services.aggregator import Aggregator
from codex_meter.services.store import EventStore

logger = structlog.get_logger()


class StartupError(RuntimeError):
    """The service cannot start (database or configuration unusable)."""


class MeterRuntime:
    """
    Owns every component for the lifetime of the process.

    Args:
        settings: Application settings
        run_collector: Start the collector loop (off for one-shot CLI commands)
        run_scheduler: Start the periodic jobs
        upstream_client: HTTP client for the proxy collector
    """

    def __init__(
        self,
        settings: Settings,
        run_collector: bool = True,
        run_scheduler: Optional[bool] = None,
        upstream_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.upstream_client = upstream_client
        self.run_collector = run_collector
        self.run_scheduler = settings.scheduler_enabled if run_scheduler is None else run_scheduler

        self.database: Optional[Database] = None
        self.store: Optional[EventStore] = None
        self.channel: Optional[UsageChannel] = None
        self.aggregator: Optional[Aggregator] = None
        self.collector: Optional[Collector] = None
        self.controller: Optional[RebuildController] = None
        self.scheduler: Optional[JobScheduler] = None

        self._stop = asyncio.Event()
        self._aggregator_task: Optional[asyncio.Task] = None
        self._collector_task: Optional[asyncio.Task] = None
        self.started = False

    @property
    def tailer(self) -> Optional[LogTailer]:
        return self.collector if isinstance(self.collector, LogTailer) else None

    @property
    def proxy(self) -> Optional[ProxyCollector]:
        return self.collector if isinstance(self.collector, ProxyCollector) else None

    async def start(self) -> None:
        """
        Open storage, seed prices and start the pipeline.

        Raises:
            StartupError: If the database or the pricing config is unusable
        """
        settings = self.settings
        try:
            rules, default_rate = load_seed_rules(settings.pricing_config_path, today=date.today())
        except (OSError, ValueError) as e:
            raise StartupError(f"Pricing configuration unreadable: {e}") from e

        self.database = Database(settings.database_url)
        try:
            await self.database.init()
            await self.database.ping()
        except Exception as e:
            await self.database.close()
            raise StartupError(f"Database unavailable at {settings.database_path}: {e}") from e

        self.store = EventStore(self.database, default_rate=default_rate)
        await self.store.seed_prices_if_empty(rules)

        self.channel = UsageChannel(
            capacity=settings.channel_capacity,
            shutdown_timeout=settings.shutdown_send_timeout_seconds,
        )
        self.aggregator = Aggregator(
            self.store,
            self.channel,
            recent_capacity=settings.recent_events_capacity,
            flush_interval=settings.flush_interval_seconds,
        )
        await self.aggregator.prime()
        self._aggregator_task = asyncio.create_task(self.aggregator.run(), name="aggregator")
        self._aggregator_task.add_done_callback(self._aggregator_done)

        self.collector = build_collector(
            settings, self.channel, self.store, upstream_client=self.upstream_client
        )
        if self.run_collector:
            self._collector_task = asyncio.create_task(
                self.collector.run(self._stop),
                name=f"collector-{self.collector.name}",
            )
        elif self.tailer is not None:
            await self.tailer.load_cursors()

        self.controller = RebuildController(self.channel, self.store, tailer=self.tailer)
        if self.run_scheduler:
            self.scheduler = JobScheduler(self.controller, settings.drift_check_hour)
            self.scheduler.setup()
            self.scheduler.start()

        self.started = True
        logger.info(
            "Meter started",
            collector=self.collector.name,
            database=str(settings.database_path),
            flush_interval=settings.flush_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop producers, drain the channel, flush and close storage."""
        if not self.started:
            return
        self.started = False
        logger.info("Meter stopping")

        if self.scheduler is not None:
            self.scheduler.stop()

        self.channel.begin_shutdown()
        self._stop.set()
        if self._collector_task is not None:
            try:
                await self._collector_task
            except Exception as e:
                logger.error("Collector ended with an error", error=str(e))
        elif self.proxy is not None:
            await self.proxy.aclose()

        await self.channel.close()
        if self._aggregator_task is not None:
            try:
                await self._aggregator_task
            except Exception as e:
                logger.error("Aggregator ended with an error", error=str(e))

        await self.database.close()
        logger.info(
            "Meter stopped",
            sent=self.channel.sent,
            dropped=self.channel.dropped,
        )

    def _aggregator_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.critical("Aggregator stopped unexpectedly", error=str(error))
