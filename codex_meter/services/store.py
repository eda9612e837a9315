"""
Event Store
===========
Durable store for raw usage events, daily aggregates, price rules and tailer
cursors.

The Aggregator is the only writer of events, aggregates and cursors. Readers
use their own sessions and see consistent snapshots thanks to SQLite WAL.
"""

import functools
import json
from collections.abc import AsyncIterator, Mapping
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from codex_meter.core.pricing import DefaultRate, PriceRuleData, PriceTimeline
from codex_meter.database import Database
from codex_meter.models.usage import (
    CollectorCursor,
    DailyStat,
    PriceRule,
    UsageEventRecord,
)
from codex_meter.schemas.usage import (
    CursorState,
    DailyDelta,
    DailyStatItem,
    PeriodTotals,
    PriceRuleCreate,
    PriceRuleUpdate,
    RecentEvent,
    UsageEvent,
)

logger = structlog.get_logger()

WRITE_RETRY_ATTEMPTS = 5


class AppendResult(str, Enum):
    INSERTED = "inserted"
    DUPLICATE_IGNORED = "duplicate_ignored"


class StoreWriteError(RuntimeError):
    """A write kept failing after bounded retries."""


class PriceRuleConflictError(ValueError):
    """A rule with the same prefix and effective date already exists."""


class PriceRuleNotFoundError(LookupError):
    """No price rule with the requested id."""


def _log_retry(retry_state) -> None:
    logger.warning(
        "Store write failed, retrying",
        operation=retry_state.fn.__name__,
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


def write_operation(func):
    """Retry transient SQLite errors with bounded backoff, then fail loudly."""
    retrying = retry(
        stop=stop_after_attempt(WRITE_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=2),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=_log_retry,
        reraise=True,
    )(func)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await retrying(*args, **kwargs)
        except OperationalError as e:
            logger.error("Store write failed", operation=func.__name__, error=str(e))
            raise StoreWriteError(f"{func.__name__} failed: {e}") from e

    return wrapper


def _to_db_timestamp(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_timestamp(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def _as_date(value) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _rule_data(rule: PriceRule) -> PriceRuleData:
    return PriceRuleData(
        model_prefix=rule.model_prefix,
        prompt_per_million=Decimal(rule.prompt_per_million),
        completion_per_million=Decimal(rule.completion_per_million),
        cached_prompt_per_million=(
            Decimal(rule.cached_prompt_per_million)
            if rule.cached_prompt_per_million is not None
            else None
        ),
        effective_from=rule.effective_from,
    )


def _record_to_event(row: UsageEventRecord) -> UsageEvent:
    return UsageEvent(
        source_id=row.source_id,
        timestamp=_from_db_timestamp(row.timestamp),
        model=row.model,
        prompt_tokens=row.prompt_tokens,
        cached_prompt_tokens=row.cached_prompt_tokens,
        completion_tokens=row.completion_tokens,
        reasoning_tokens=row.reasoning_tokens,
        latency_ms=row.latency_ms,
        collector=row.collector,
        session_id=row.session_id,
    )


def period_starts(today: date) -> list[tuple[str, date]]:
    """Start dates of the summary periods ending on ``today``."""
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)
    year, month = today.year, today.month - 11
    if month <= 0:
        year, month = year - 1, month + 12
    return [
        ("today", today),
        ("week", week_start),
        ("month", month_start),
        ("last_12_months", date(year, month, 1)),
    ]


class EventStore:
    """Repository over the usage tables."""

    def __init__(self, database: Database, default_rate: Optional[DefaultRate] = None):
        self.database = database
        self.default_rate = default_rate

    # Raw events

    @write_operation
    async def append_event(self, event: UsageEvent) -> AppendResult:
        """
        Insert a raw event keyed by ``source_id``.

        A duplicate key is a no-op rather than an error, which is what makes
        replaying a log after a restart safe.
        """
        stmt = (
            sqlite_insert(UsageEventRecord)
            .values(
                source_id=event.source_id,
                timestamp=_to_db_timestamp(event.timestamp),
                model=event.model,
                prompt_tokens=event.prompt_tokens,
                cached_prompt_tokens=event.cached_prompt_tokens,
                completion_tokens=event.completion_tokens,
                reasoning_tokens=event.reasoning_tokens,
                latency_ms=event.latency_ms,
                collector=event.collector,
                session_id=event.session_id,
            )
            .on_conflict_do_nothing(index_elements=["source_id"])
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)

        if result.rowcount == 1:
            return AppendResult.INSERTED
        return AppendResult.DUPLICATE_IGNORED

    async def recent_events(self, limit: int = 50) -> list[UsageEvent]:
        """Most recent events first."""
        stmt = (
            select(UsageEventRecord)
            .order_by(UsageEventRecord.timestamp.desc(), UsageEventRecord.source_id.desc())
            .limit(limit)
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_record_to_event(row) for row in rows]

    async def recent_events_with_cost(self, limit: int = 50) -> list[RecentEvent]:
        events = await self.recent_events(limit)
        timeline = await self.price_timeline()
        return [
            RecentEvent.from_event(
                event,
                timeline.cost_for(
                    event.model,
                    event.usage_date,
                    event.prompt_tokens,
                    event.cached_prompt_tokens,
                    event.completion_tokens,
                ),
            )
            for event in events
        ]

    async def count_events(self) -> int:
        async with self.database.session() as session:
            return (await session.execute(select(func.count(UsageEventRecord.source_id)))).scalar_one()

    async def iter_events(self, batch_size: int = 1000) -> AsyncIterator[UsageEvent]:
        """Yield every stored event, paging by primary key."""
        last_id: Optional[str] = None
        while True:
            stmt = select(UsageEventRecord).order_by(UsageEventRecord.source_id).limit(batch_size)
            if last_id is not None:
                stmt = stmt.where(UsageEventRecord.source_id > last_id)
            async with self.database.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
            if not rows:
                return
            for row in rows:
                yield _record_to_event(row)
            last_id = rows[-1].source_id

    # Daily aggregates

    @write_operation
    async def upsert_daily(self, day: date, model: str, delta: DailyDelta) -> None:
        """Atomically create or increment one DailyStat row."""
        await self.upsert_daily_many({(day, model): delta})

    @write_operation
    async def upsert_daily_many(self, deltas: Mapping[tuple[date, str], DailyDelta]) -> None:
        """Apply several increments in a single transaction."""
        if not deltas:
            return
        async with self.database.session() as session:
            for (day, model), delta in deltas.items():
                stmt = sqlite_insert(DailyStat).values(
                    date=day,
                    model=model,
                    prompt_tokens=delta.prompt_tokens,
                    cached_prompt_tokens=delta.cached_prompt_tokens,
                    completion_tokens=delta.completion_tokens,
                    request_count=delta.request_count,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DailyStat.date, DailyStat.model],
                    set_={
                        "prompt_tokens": DailyStat.prompt_tokens + stmt.excluded.prompt_tokens,
                        "cached_prompt_tokens": DailyStat.cached_prompt_tokens
                        + stmt.excluded.cached_prompt_tokens,
                        "completion_tokens": DailyStat.completion_tokens
                        + stmt.excluded.completion_tokens,
                        "request_count": DailyStat.request_count + stmt.excluded.request_count,
                    },
                )
                await session.execute(stmt)

    async def query_range(self, start: date, end: date) -> list[DailyStatItem]:
        """DailyStat rows between ``start`` and ``end`` (inclusive) with resolved cost."""
        stmt = (
            select(DailyStat)
            .where(DailyStat.date >= start, DailyStat.date <= end)
            .order_by(DailyStat.date.desc(), DailyStat.model)
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        timeline = await self.price_timeline()
        return [
            DailyStatItem(
                date=row.date,
                model=row.model,
                prompt_tokens=row.prompt_tokens,
                cached_prompt_tokens=row.cached_prompt_tokens,
                completion_tokens=row.completion_tokens,
                request_count=row.request_count,
                cost=timeline.cost_for(
                    row.model,
                    row.date,
                    row.prompt_tokens,
                    row.cached_prompt_tokens,
                    row.completion_tokens,
                ),
            )
            for row in rows
        ]

    async def period_totals(self, label: str, start: date, end: date) -> PeriodTotals:
        items = await self.query_range(start, end)
        return totals_for(label, start, end, items)

    async def summary(self, today: Optional[date] = None) -> list[PeriodTotals]:
        """Totals for today, this week, this month and the trailing 12 months."""
        today = today or datetime.now(timezone.utc).date()
        periods = period_starts(today)
        earliest = min(start for _, start in periods)
        items = await self.query_range(earliest, today)
        return [
            totals_for(label, start, today, [item for item in items if item.date >= start])
            for label, start in periods
        ]

    async def daily_totals(self) -> dict[tuple[date, str], DailyDelta]:
        async with self.database.session() as session:
            rows = (await session.execute(select(DailyStat))).scalars().all()
        return {
            (row.date, row.model): DailyDelta(
                prompt_tokens=row.prompt_tokens,
                cached_prompt_tokens=row.cached_prompt_tokens,
                completion_tokens=row.completion_tokens,
                request_count=row.request_count,
            )
            for row in rows
        }

    async def event_totals(self) -> dict[tuple[date, str], DailyDelta]:
        """Raw events summed per (date, model), for drift verification."""
        day = func.date(UsageEventRecord.timestamp)
        stmt = select(
            day.label("day"),
            UsageEventRecord.model,
            func.sum(UsageEventRecord.prompt_tokens).label("prompt_tokens"),
            func.sum(UsageEventRecord.cached_prompt_tokens).label("cached_prompt_tokens"),
            func.sum(UsageEventRecord.completion_tokens).label("completion_tokens"),
            func.count(UsageEventRecord.source_id).label("request_count"),
        ).group_by(day, UsageEventRecord.model)

        async with self.database.session() as session:
            rows = (await session.execute(stmt)).all()
        return {
            (_as_date(row.day), row.model): DailyDelta(
                prompt_tokens=row.prompt_tokens or 0,
                cached_prompt_tokens=row.cached_prompt_tokens or 0,
                completion_tokens=row.completion_tokens or 0,
                request_count=row.request_count,
            )
            for row in rows
        }

    @write_operation
    async def truncate_derived(self, reset_cursors: bool = True) -> None:
        """
        Clear aggregates and rewind cursors to offset 0.

        Raw events and price rules are kept. Cursor generations survive so
        source ids derived from a re-read stay identical to the originals.
        """
        async with self.database.session() as session:
            await session.execute(delete(DailyStat))
            if reset_cursors:
                await session.execute(
                    update(CollectorCursor).values(
                        byte_offset=0,
                        last_event_source_id=None,
                        parse_state=None,
                        updated_at=func.now(),
                    )
                )
        logger.info("Derived tables truncated", reset_cursors=reset_cursors)

    # Cursors

    async def load_cursor(self, file_identity: str) -> Optional[CursorState]:
        async with self.database.session() as session:
            row = await session.get(CollectorCursor, file_identity)
        if row is None:
            return None
        return CursorState(
            file_identity=row.file_identity,
            path=row.path,
            byte_offset=row.byte_offset,
            generation=row.generation,
            last_event_source_id=row.last_event_source_id,
            parse_state=json.loads(row.parse_state) if row.parse_state else {},
        )

    async def load_cursors(self, active_only: bool = True) -> list[CursorState]:
        stmt = select(CollectorCursor).order_by(CollectorCursor.path)
        if active_only:
            stmt = stmt.where(CollectorCursor.is_active.is_(True))
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            CursorState(
                file_identity=row.file_identity,
                path=row.path,
                byte_offset=row.byte_offset,
                generation=row.generation,
                last_event_source_id=row.last_event_source_id,
                parse_state=json.loads(row.parse_state) if row.parse_state else {},
            )
            for row in rows
        ]

    @write_operation
    async def save_cursor(self, cursor: CursorState) -> None:
        """
        Upsert a cursor. Any other cursor that pointed at the same path is kept
        but marked inactive, since that file has been rotated away.
        """
        values = {
            "path": cursor.path,
            "byte_offset": cursor.byte_offset,
            "generation": cursor.generation,
            "last_event_source_id": cursor.last_event_source_id,
            "parse_state": json.dumps(cursor.parse_state, sort_keys=True),
            "is_active": True,
        }
        stmt = sqlite_insert(CollectorCursor).values(file_identity=cursor.file_identity, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CollectorCursor.file_identity],
            set_={**values, "updated_at": func.now()},
        )
        async with self.database.session() as session:
            await session.execute(stmt)
            await session.execute(
                update(CollectorCursor)
                .where(
                    CollectorCursor.path == cursor.path,
                    CollectorCursor.file_identity != cursor.file_identity,
                    CollectorCursor.is_active.is_(True),
                )
                .values(is_active=False)
            )

    # Price rules

    async def list_price_rules(self) -> list[PriceRule]:
        stmt = select(PriceRule).order_by(PriceRule.model_prefix, PriceRule.effective_from)
        async with self.database.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def price_timeline(self) -> PriceTimeline:
        """Snapshot of the current rules for read-time cost resolution."""
        rules = await self.list_price_rules()
        return PriceTimeline([_rule_data(rule) for rule in rules], self.default_rate)

    @write_operation
    async def add_price_rule(self, data: PriceRuleCreate) -> PriceRule:
        rule = PriceRule(
            model_prefix=data.model_prefix,
            prompt_per_million=data.prompt_per_million,
            cached_prompt_per_million=data.cached_prompt_per_million,
            completion_per_million=data.completion_per_million,
            effective_from=data.effective_from,
        )
        try:
            async with self.database.session() as session:
                session.add(rule)
                await session.flush()
        except IntegrityError as e:
            raise PriceRuleConflictError(
                f"A rule for {data.model_prefix!r} effective {data.effective_from} already exists"
            ) from e

        logger.info(
            "Added price rule",
            model_prefix=rule.model_prefix,
            effective_from=str(rule.effective_from),
        )
        return rule

    @write_operation
    async def update_price_rule(self, rule_id: UUID, changes: PriceRuleUpdate) -> PriceRule:
        """
        Edit rates or backfill the effective date of one rule.

        No other row changes; historical costs are re-derived on the next read.
        """
        fields = changes.model_dump(exclude_unset=True)
        try:
            async with self.database.session() as session:
                rule = await session.get(PriceRule, rule_id)
                if rule is None:
                    raise PriceRuleNotFoundError(f"Price rule {rule_id} not found")
                for name, value in fields.items():
                    if value is None and name != "cached_prompt_per_million":
                        continue
                    setattr(rule, name, value)
                await session.flush()
        except IntegrityError as e:
            raise PriceRuleConflictError(
                "Another rule with the same prefix and effective date already exists"
            ) from e

        logger.info("Updated price rule", rule_id=str(rule_id), fields=sorted(fields))
        return rule

    @write_operation
    async def seed_prices_if_empty(self, rules: list[PriceRuleData]) -> int:
        """Insert seed rules on first run only."""
        async with self.database.session() as session:
            existing = (await session.execute(select(func.count(PriceRule.id)))).scalar_one()
            if existing:
                return 0
            for rule in rules:
                session.add(
                    PriceRule(
                        model_prefix=rule.model_prefix,
                        prompt_per_million=rule.prompt_per_million,
                        cached_prompt_per_million=rule.cached_prompt_per_million,
                        completion_per_million=rule.completion_per_million,
                        effective_from=rule.effective_from,
                    )
                )

        logger.info("Seeded price rules", count=len(rules))
        return len(rules)


def totals_for(label: str, start: date, end: date, items: list[DailyStatItem]) -> PeriodTotals:
    """Fold daily rows into period totals; unpriced rows are listed, not zeroed."""
    totals = PeriodTotals(label=label, start_date=start, end_date=end)
    unpriced: set[str] = set()
    for item in items:
        totals.prompt_tokens += item.prompt_tokens
        totals.cached_prompt_tokens += item.cached_prompt_tokens
        totals.completion_tokens += item.completion_tokens
        totals.total_tokens += item.total_tokens
        totals.request_count += item.request_count
        if item.cost is None:
            unpriced.add(item.model)
        else:
            totals.cost += item.cost
    totals.unpriced_models = sorted(unpriced)
    return totals
