"""
Aggregator
==========
Single consumer of the usage channel and the only writer of events,
aggregates and cursors.

For each event: append idempotently, resolve the cost for its own date,
apply (or stage) the DailyStat delta, push it into the recent-events ring
buffer, then notify display consumers. A duplicate stops the pipeline at the
first step, so replays never double count.
"""

import asyncio
import time
from collections import deque
from datetime import date
from typing import Optional

import structlog

from codex_meter.core.channel import ChannelClosed, FlushCommand, RebuildCommand, UsageChannel
from codex_meter.core.metrics import (
    EVENTS_DUPLICATE,
    EVENTS_INGESTED,
    EVENTS_REJECTED,
    FLUSH_FAILURES,
    UNPRICED_EVENTS,
)
from codex_meter.core.pricing import PriceTimeline
from codex_meter.schemas.usage import CursorState, DailyDelta, RecentEvent, UsageEvent
from codex_meter.services.store import AppendResult, EventStore, StoreWriteError

logger = structlog.get_logger()

REPLAY_BATCH_KEYS = 500


def merge_delta(
    staged: dict[tuple[date, str], DailyDelta],
    key: tuple[date, str],
    delta: DailyDelta,
) -> None:
    if key in staged:
        staged[key].add(delta)
    else:
        staged[key] = DailyDelta(
            prompt_tokens=delta.prompt_tokens,
            cached_prompt_tokens=delta.cached_prompt_tokens,
            completion_tokens=delta.completion_tokens,
            request_count=delta.request_count,
        )


class RecentEvents:
    """Bounded ring buffer of the newest events; the oldest entry is evicted first."""

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self._items: deque[RecentEvent] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, event: RecentEvent) -> None:
        self._items.append(event)

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self, limit: Optional[int] = None) -> list[RecentEvent]:
        """Return events newest first."""
        items = list(reversed(self._items))
        if limit is not None:
            return items[:limit]
        return items


class Aggregator:
    """
    Consumes the usage channel and maintains the derived views.

    Args:
        store: Event store (the Aggregator is its only writer)
        channel: Channel fed by the collectors
        recent_capacity: Size of the recent-events ring buffer
        flush_interval: Seconds between DailyStat flushes; 0 writes every event
    """

    def __init__(
        self,
        store: EventStore,
        channel: UsageChannel,
        recent_capacity: int = 500,
        flush_interval: float = 5.0,
    ):
        self.store = store
        self.channel = channel
        self.flush_interval = flush_interval
        self.recent = RecentEvents(recent_capacity)
        self.timeline = PriceTimeline((), store.default_rate)

        self.version = 0
        self.processed = 0
        self.duplicates = 0
        self._staged: dict[tuple[date, str], DailyDelta] = {}
        self._last_flush = time.monotonic()
        self._changed = asyncio.Event()
        self._subscribers: set[asyncio.Queue] = set()
        self._unpriced_models: set[str] = set()

    @property
    def batched(self) -> bool:
        return self.flush_interval > 0

    @property
    def staged_count(self) -> int:
        return len(self._staged)

    async def prime(self) -> None:
        """Load prices and fill the ring buffer from stored history."""
        await self.reload_pricing()
        await self._fill_recent()

    async def reload_pricing(self) -> None:
        """Take a fresh snapshot of the price rules."""
        self.timeline = await self.store.price_timeline()
        self._unpriced_models.clear()
        logger.debug("Price timeline loaded", rules=len(self.timeline))

    async def run(self) -> None:
        """
        Process channel items until the channel is closed.

        Staged deltas are flushed on the interval and once more on the way out.
        A raw append that keeps failing is fatal and propagates; any other
        failure to process an event is logged and that event is skipped.
        """
        logger.info(
            "Aggregator started",
            flush_interval=self.flush_interval,
            recent_capacity=self.recent.capacity,
        )
        try:
            while True:
                try:
                    item = await self.channel.receive(timeout=self._receive_timeout())
                except ChannelClosed:
                    break

                if item is not None:
                    try:
                        await self.handle(item)
                    finally:
                        self.channel.task_done()

                if self.batched and self._flush_due():
                    await self.flush()
        finally:
            await self.flush()
            logger.info(
                "Aggregator stopped",
                processed=self.processed,
                duplicates=self.duplicates,
                staged=self.staged_count,
            )

    async def handle(self, item) -> None:
        if isinstance(item, UsageEvent):
            try:
                await self.process_event(item)
            except StoreWriteError:
                raise
            except Exception as e:
                EVENTS_REJECTED.inc()
                logger.error(
                    "Skipping event that could not be processed",
                    source_id=item.source_id,
                    error=str(e),
                )
        elif isinstance(item, CursorState):
            await self._save_cursor(item)
        elif isinstance(item, RebuildCommand):
            await self._rebuild(item)
        elif isinstance(item, FlushCommand):
            written = await self.flush()
            if not item.done.done():
                item.done.set_result(written)
        else:
            logger.warning("Ignoring unknown channel item", item_type=type(item).__name__)

    async def process_event(self, event: UsageEvent) -> bool:
        """
        Run one event through the pipeline.

        Returns:
            True if the event was new, False if it was a duplicate
        """
        result = await self.store.append_event(event)
        if result is AppendResult.DUPLICATE_IGNORED:
            self.duplicates += 1
            EVENTS_DUPLICATE.labels(collector=event.collector).inc()
            logger.debug("Duplicate event ignored", source_id=event.source_id)
            return False

        self.processed += 1
        EVENTS_INGESTED.labels(collector=event.collector).inc()

        cost = self.timeline.cost_for(
            event.model,
            event.usage_date,
            event.prompt_tokens,
            event.cached_prompt_tokens,
            event.completion_tokens,
        )
        if cost is None:
            UNPRICED_EVENTS.inc()
            if event.model not in self._unpriced_models:
                self._unpriced_models.add(event.model)
                logger.warning("No price for model", model=event.model, date=str(event.usage_date))

        delta = DailyDelta.from_event(event)
        if self.batched:
            self._stage(event.usage_date, event.model, delta)
        else:
            try:
                await self.store.upsert_daily(event.usage_date, event.model, delta)
            except StoreWriteError as e:
                FLUSH_FAILURES.inc()
                logger.error(
                    "Daily aggregate update failed; run a rebuild to recover",
                    source_id=event.source_id,
                    error=str(e),
                )

        self.recent.push(RecentEvent.from_event(event, cost))
        self._notify()
        return True

    async def flush(self) -> int:
        """
        Write staged deltas.

        On failure the deltas stay staged for the next cycle.

        Returns:
            Number of (date, model) rows written
        """
        self._last_flush = time.monotonic()
        if not self._staged:
            return 0

        staged = dict(self._staged)
        try:
            await self.store.upsert_daily_many(staged)
        except StoreWriteError as e:
            FLUSH_FAILURES.inc()
            logger.error("Flush failed, keeping staged deltas", rows=len(staged), error=str(e))
            return 0

        for key in staged:
            self._staged.pop(key, None)
        logger.debug("Flushed daily aggregates", rows=len(staged))
        self._notify()
        return len(staged)

    # Display consumers

    async def wait_for_change(self, since: int, timeout: Optional[float] = None) -> int:
        """Wait until the version moves past ``since``; returns the current version."""
        if self.version > since:
            return self.version
        changed = self._changed
        try:
            await asyncio.wait_for(changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.version

    def subscribe(self) -> asyncio.Queue:
        """Queue that receives the latest version number after each change."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    # Internals

    def _notify(self) -> None:
        self.version += 1
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        for queue in self._subscribers:
            if queue.full():
                # Slow consumers only need the newest version.
                queue.get_nowait()
            queue.put_nowait(self.version)

    def _stage(self, day: date, model: str, delta: DailyDelta) -> None:
        merge_delta(self._staged, (day, model), delta)

    def _flush_due(self) -> bool:
        return time.monotonic() - self._last_flush >= self.flush_interval

    def _receive_timeout(self) -> Optional[float]:
        if not self.batched or not self._staged:
            return None
        remaining = self.flush_interval - (time.monotonic() - self._last_flush)
        return max(remaining, 0.0)

    async def _save_cursor(self, cursor: CursorState) -> None:
        try:
            await self.store.save_cursor(cursor)
        except StoreWriteError as e:
            # Re-reading from an older offset only yields duplicates.
            logger.error("Failed to persist cursor", path=cursor.path, error=str(e))

    async def _fill_recent(self) -> None:
        self.recent.clear()
        events = await self.store.recent_events(self.recent.capacity)
        for event in reversed(events):
            cost = self.timeline.cost_for(
                event.model,
                event.usage_date,
                event.prompt_tokens,
                event.cached_prompt_tokens,
                event.completion_tokens,
            )
            self.recent.push(RecentEvent.from_event(event, cost))

    async def _rebuild(self, command: RebuildCommand) -> None:
        """
        Truncate derived tables and replay every stored event.

        Live staged deltas are discarded since the replay covers their events.
        The replay is staged separately and never reaches the live flush path,
        so a failed rebuild cannot leak a partial replay into DailyStat.
        """
        logger.info("Rebuild started", reset_cursors=command.reset_cursors)
        self._staged.clear()
        replay: dict[tuple[date, str], DailyDelta] = {}
        try:
            await self.store.truncate_derived(reset_cursors=command.reset_cursors)
            await self.reload_pricing()

            replayed = 0
            async for event in self.store.iter_events():
                merge_delta(replay, (event.usage_date, event.model), DailyDelta.from_event(event))
                replayed += 1
                if len(replay) >= REPLAY_BATCH_KEYS:
                    await self.store.upsert_daily_many(replay)
                    replay.clear()
            await self.store.upsert_daily_many(replay)

            await self._fill_recent()
        except Exception as e:
            logger.error("Rebuild failed; daily aggregates are incomplete until it succeeds", error=str(e))
            if not command.done.done():
                command.done.set_exception(e)
            return

        self._notify()
        logger.info("Rebuild replay complete", events=replayed)
        if not command.done.done():
            command.done.set_result(replayed)
