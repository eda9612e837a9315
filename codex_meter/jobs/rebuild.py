"""
Rebuild Controller
==================
Recomputes the derived tables from raw history.

The truncate and replay run inside the Aggregator (it is the only writer),
triggered through the usage channel. Afterwards the log tailer is rewound
and re-driven from offset 0, so records that never made it into the store
are ingested while everything else is ignored as a duplicate.
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Optional

import structlog

from codex_meter.collectors.tailer import LogTailer
from codex_meter.core.channel import FlushCommand, RebuildCommand, UsageChannel
from codex_meter.schemas.usage import DailyDelta, DriftRow, RebuildReport
from codex_meter.services.store import EventStore

logger = structlog.get_logger()


class RebuildNotConfirmed(Exception):
    """A rebuild was requested without explicit confirmation."""


class RebuildInProgress(Exception):
    """Another rebuild is already running."""


class RebuildController:
    """
    Rebuild and drift verification.

    Args:
        channel: Channel to the running Aggregator
        store: Event store (read only here)
        tailer: Log tailer to re-drive; ``None`` when raw events are the only history
    """

    def __init__(
        self,
        channel: UsageChannel,
        store: EventStore,
        tailer: Optional[LogTailer] = None,
    ):
        self.channel = channel
        self.store = store
        self.tailer = tailer
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def rebuild(self, confirm: bool = False) -> RebuildReport:
        """
        Truncate aggregates, rewind cursors and replay history.

        Raises:
            RebuildNotConfirmed: If ``confirm`` is not set
            RebuildInProgress: If a rebuild is already running
        """
        if not confirm:
            raise RebuildNotConfirmed("Rebuild truncates derived tables; confirmation required")
        if self._lock.locked():
            raise RebuildInProgress("A rebuild is already running")

        async with self._lock:
            started_at = datetime.now(timezone.utc)
            logger.info("Rebuild requested", tailer=self.tailer is not None)

            command = RebuildCommand()
            await self.channel.send(command)
            replayed = await command.done

            rescanned = 0
            if self.tailer is not None:
                await self.tailer.reset()
                rescanned = await self.tailer.scan_once()

            await self.flush()
            drift = await self.verify()
            daily_rows = len(await self.store.daily_totals())

            report = RebuildReport(
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                events_replayed=replayed,
                daily_rows=daily_rows,
                records_rescanned=rescanned,
                drift=drift,
            )
            logger.info(
                "Rebuild finished",
                events_replayed=replayed,
                records_rescanned=rescanned,
                daily_rows=daily_rows,
                drift=len(drift),
            )
            return report

    async def flush(self) -> int:
        """Make the Aggregator write its staged deltas and wait for it."""
        command = FlushCommand()
        await self.channel.send(command)
        return await command.done

    async def verify(self, until: Optional[date] = None) -> list[DriftRow]:
        """
        Compare DailyStat with sums over raw events.

        Args:
            until: Ignore dates after this one (still receiving live updates)

        Returns:
            One row per (date, model) whose aggregate differs
        """
        expected = await self.store.event_totals()
        actual = await self.store.daily_totals()

        drift = []
        for day, model in sorted(set(expected) | set(actual)):
            if until is not None and day > until:
                continue
            want = expected.get((day, model), DailyDelta())
            have = actual.get((day, model))
            if have != want:
                drift.append(DriftRow(date=day, model=model, expected=want, actual=have))

        if drift:
            logger.warning("Aggregate drift detected", rows=len(drift))
        return drift
