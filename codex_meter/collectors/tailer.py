"""
Log Tailer
==========
Follows append-only session logs and emits one UsageEvent per usage-bearing
line.

Files are tracked by identity (``st_dev:st_ino``) rather than by name, so a
rename-based rotation keeps its cursor while a new file at the old path
starts from offset 0. A file that shrinks below its cursor is treated as
truncated: reading restarts at 0 under a new generation so the source ids of
the rewritten content cannot collide with what was read before.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from codex_meter.collectors.records import MalformedRecordError, ParseState, parse_record
from codex_meter.core.channel import UsageChannel
from codex_meter.core.metrics import RECORDS_MALFORMED
from codex_meter.schemas.usage import CursorState, UsageEvent
from codex_meter.services.store import EventStore

logger = structlog.get_logger()

READ_CHUNK_BYTES = 1024 * 1024


def file_identity(path: Path) -> tuple[str, int]:
    """Return the rotation-proof identity and current size of ``path``."""
    st = path.stat()
    return f"{st.st_dev}:{st.st_ino}", st.st_size


def _read_from(path: Path, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


class FileFollower:
    """Reads one file incrementally from its cursor."""

    def __init__(self, path: Path, identity: str, cursor: Optional[CursorState] = None):
        self.path = path
        self.identity = identity
        self.offset = 0
        self.generation = 0
        self.parse_state = ParseState()
        self.last_event_source_id: Optional[str] = None
        self.malformed = 0
        if cursor is not None:
            self.offset = cursor.byte_offset
            self.generation = cursor.generation
            self.parse_state = ParseState.from_dict(cursor.parse_state)
            self.last_event_source_id = cursor.last_event_source_id

    def source_id(self, line_offset: int) -> str:
        return f"{self.identity}:{self.generation}:{line_offset}"

    def cursor(self) -> CursorState:
        return CursorState(
            file_identity=self.identity,
            path=str(self.path),
            byte_offset=self.offset,
            generation=self.generation,
            last_event_source_id=self.last_event_source_id,
            parse_state=self.parse_state.to_dict(),
        )

    def rewind(self) -> None:
        """Start over from offset 0 in the current generation."""
        self.offset = 0
        self.parse_state = ParseState()
        self.last_event_source_id = None

    async def poll(self, channel: UsageChannel, size: int) -> int:
        """
        Read every complete line past the cursor.

        A trailing partial line is left unread. After each chunk a cursor
        checkpoint follows the chunk's events through the channel.

        Returns:
            Number of events emitted
        """
        if size < self.offset:
            logger.warning(
                "Log file truncated, restarting from offset 0",
                path=str(self.path),
                offset=self.offset,
                size=size,
            )
            self.generation += 1
            self.rewind()

        emitted = 0
        read_size = READ_CHUNK_BYTES
        while self.offset < size:
            chunk = await asyncio.to_thread(_read_from, self.path, self.offset, read_size)
            if not chunk:
                break

            end = chunk.rfind(b"\n")
            if end < 0:
                if len(chunk) < read_size:
                    break
                # A single line longer than the chunk; read more of it.
                read_size *= 2
                continue

            position = self.offset
            for raw in chunk[: end + 1].split(b"\n")[:-1]:
                line_offset = position
                position += len(raw) + 1

                event = self._parse(raw.rstrip(b"\r"), line_offset)
                if event is not None:
                    if not await channel.send(event):
                        # Shutting down; resume from this line next time.
                        self.offset = line_offset
                        return emitted
                    self.last_event_source_id = event.source_id
                    emitted += 1
                self.offset = position

            await channel.send(self.cursor())
            read_size = READ_CHUNK_BYTES

        return emitted

    def _parse(self, raw: bytes, line_offset: int) -> Optional[UsageEvent]:
        try:
            parsed = parse_record(raw, self.parse_state)
            if parsed is None:
                return None
            return UsageEvent(
                source_id=self.source_id(line_offset),
                timestamp=parsed.timestamp,
                model=parsed.model,
                prompt_tokens=parsed.prompt_tokens,
                cached_prompt_tokens=parsed.cached_prompt_tokens,
                completion_tokens=parsed.completion_tokens,
                reasoning_tokens=parsed.reasoning_tokens,
                collector="tailer",
                session_id=parsed.session_id,
            )
        except (MalformedRecordError, ValidationError, OverflowError) as e:
            self.malformed += 1
            RECORDS_MALFORMED.inc()
            logger.warning(
                "Skipping malformed record",
                path=str(self.path),
                offset=line_offset,
                error=str(e),
            )
            return None


class LogTailer:
    """
    Log-tailing collector.

    Args:
        directory: Root directory searched recursively for session logs
        channel: Channel to the Aggregator
        store: Event store, read for saved cursors only
        pattern: Glob for session log files
        poll_interval: Seconds between scans
    """

    name = "tailer"

    def __init__(
        self,
        directory: Path,
        channel: UsageChannel,
        store: EventStore,
        pattern: str = "*.jsonl",
        poll_interval: float = 1.0,
    ):
        self.directory = Path(directory)
        self.channel = channel
        self.store = store
        self.pattern = pattern
        self.poll_interval = poll_interval
        self.followers: dict[str, FileFollower] = {}
        self._cursors: dict[str, CursorState] = {}
        self._path_identities: dict[Path, str] = {}
        self._lock = asyncio.Lock()

    async def load_cursors(self) -> int:
        """Load saved cursors, including those of rotated files."""
        cursors = await self.store.load_cursors(active_only=False)
        self._cursors = {cursor.file_identity: cursor for cursor in cursors}
        logger.info("Loaded tailer cursors", count=len(self._cursors))
        return len(self._cursors)

    async def run(self, stop: asyncio.Event) -> None:
        await self.load_cursors()
        logger.info("Log tailer started", directory=str(self.directory), pattern=self.pattern)

        while not stop.is_set():
            try:
                await self.scan_once()
            except OSError as e:
                logger.warning("Log scan failed", directory=str(self.directory), error=str(e))

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Log tailer stopped", files=len(self.followers))

    async def scan_once(self) -> int:
        """Discover matching files and read each one up to its end."""
        async with self._lock:
            if not self.directory.is_dir():
                logger.debug("Log directory not found", directory=str(self.directory))
                return 0

            emitted = 0
            seen: set[str] = set()
            for path in sorted(self.directory.rglob(self.pattern)):
                if self.channel.shutting_down:
                    break
                try:
                    identity, size = file_identity(path)
                except FileNotFoundError:
                    continue
                if not path.is_file():
                    continue

                seen.add(identity)
                follower = self._follower_for(path, identity)
                try:
                    emitted += await follower.poll(self.channel, size)
                except FileNotFoundError:
                    logger.debug("Log file removed while reading", path=str(path))

            for identity in set(self.followers) - seen:
                follower = self.followers.pop(identity)
                self._cursors[identity] = follower.cursor()
                logger.debug("Stopped following file", path=str(follower.path))

            return emitted

    async def reset(self) -> None:
        """Rewind every known file to offset 0, keeping generations."""
        async with self._lock:
            for follower in self.followers.values():
                follower.rewind()
            for identity, cursor in list(self._cursors.items()):
                self._cursors[identity] = cursor.model_copy(
                    update={"byte_offset": 0, "parse_state": {}, "last_event_source_id": None}
                )
        logger.info("Log tailer rewound", files=len(self.followers))

    def _follower_for(self, path: Path, identity: str) -> FileFollower:
        previous = self._path_identities.get(path)
        if previous is not None and previous != identity:
            logger.info("Log file rotated", path=str(path), old=previous, new=identity)
        self._path_identities[path] = identity

        follower = self.followers.get(identity)
        if follower is None:
            follower = FileFollower(path, identity, self._cursors.get(identity))
            self.followers[identity] = follower
            logger.debug(
                "Following file",
                path=str(path),
                identity=identity,
                offset=follower.offset,
            )
        elif follower.path != path:
            logger.info("Log file renamed", old=str(follower.path), new=str(path))
            follower.path = path
        return follower
