"""
Usage Channel
=============
Bounded multi-producer, single-consumer channel between the collectors and
the Aggregator.

Producers block while the channel is full. The only path on which an item is
dropped is a send that cannot complete within the shutdown timeout once
shutdown has begun; every drop is logged and counted.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Union

import structlog

from codex_meter.core.metrics import EVENTS_DROPPED
from codex_meter.schemas.usage import CursorState, UsageEvent

logger = structlog.get_logger()


def _new_future() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


@dataclass
class RebuildCommand:
    """Ask the Aggregator to truncate derived tables and replay raw events."""

    reset_cursors: bool = True
    done: asyncio.Future = field(default_factory=_new_future)


@dataclass
class FlushCommand:
    """Ask the Aggregator to write its staged deltas now."""

    done: asyncio.Future = field(default_factory=_new_future)


ChannelItem = Union[UsageEvent, CursorState, RebuildCommand, FlushCommand]


class ChannelClosed(Exception):
    """Raised by ``receive`` once the channel is closed and drained."""


class _Closed:
    pass


_CLOSED = _Closed()


class UsageChannel:
    """
    Bounded FIFO channel of usage events and control items.

    Args:
        capacity: Maximum number of queued items before senders wait
        shutdown_timeout: Seconds a send may wait once shutdown has begun
    """

    def __init__(self, capacity: int = 1024, shutdown_timeout: float = 2.0):
        self.capacity = capacity
        self.shutdown_timeout = shutdown_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._shutdown = asyncio.Event()
        self._closed = False
        self.sent = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, item: ChannelItem) -> bool:
        """
        Enqueue an item, waiting for space.

        A send still waiting when shutdown begins gets ``shutdown_timeout``
        more seconds before the item is dropped.

        Returns:
            True if the item was queued, False if it was dropped
        """
        if self._closed:
            self._drop(item, "closed")
            return False

        if not self._queue.full():
            self._queue.put_nowait(item)
            self.sent += 1
            return True

        if not self.shutting_down and await self._put_until_shutdown(item):
            self.sent += 1
            return True

        try:
            await asyncio.wait_for(self._queue.put(item), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            self._drop(item, "shutdown_timeout")
            return False
        self.sent += 1
        return True

    async def receive(self, timeout: Optional[float] = None) -> Optional[ChannelItem]:
        """
        Take the next item.

        Returns ``None`` when ``timeout`` expires with nothing queued and raises
        ``ChannelClosed`` once the close marker is reached, or once a closed
        channel is empty. Every returned item must be acknowledged with
        ``task_done``.
        """
        if self._closed and self._queue.empty():
            raise ChannelClosed()

        if timeout is None:
            item = await self._queue.get()
        else:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None

        if item is _CLOSED:
            self._queue.task_done()
            raise ChannelClosed()
        return item

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    def begin_shutdown(self) -> None:
        if self.shutting_down:
            return
        self._shutdown.set()
        logger.info("Channel entering shutdown", queued=self.qsize())

    async def close(self) -> None:
        """Stop accepting items; the consumer drains what is queued, then stops."""
        if self._closed:
            return
        self._shutdown.set()
        self._closed = True
        try:
            await asyncio.wait_for(self._queue.put(_CLOSED), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            # The consumer stops at the first empty receive instead.
            logger.warning("Channel full at close; consumer is not draining", queued=self.qsize())

    async def _put_until_shutdown(self, item: ChannelItem) -> bool:
        """Wait for space; False if shutdown began before the item went in."""
        put = asyncio.ensure_future(self._queue.put(item))
        shutdown = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({put, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown.cancel()
            if not put.done():
                put.cancel()
        try:
            await put
        except asyncio.CancelledError:
            return False
        return True

    def _drop(self, item: ChannelItem, reason: str) -> None:
        self.dropped += 1
        EVENTS_DROPPED.labels(reason=reason).inc()
        if isinstance(item, (RebuildCommand, FlushCommand)) and not item.done.done():
            item.done.set_exception(ChannelClosed("Channel closed before the command ran"))
        logger.warning(
            "Dropped channel item",
            reason=reason,
            item_type=type(item).__name__,
            source_id=getattr(item, "source_id", None),
            dropped_total=self.dropped,
        )
