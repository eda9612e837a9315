"""
Usage Schemas
=============
Pydantic models for usage events, aggregates, pricing and cursors.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Largest value an INTEGER column holds in SQLite.
MAX_TOKEN_COUNT = 2**63 - 1
MAX_SESSION_ID_LENGTH = 255


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UsageEvent(BaseModel):
    """
    One normalized record of token consumption for a single request.
    Immutable once created.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1, max_length=512)
    timestamp: datetime
    model: str = Field(..., min_length=1, max_length=255)
    prompt_tokens: int = Field(default=0, ge=0, le=MAX_TOKEN_COUNT)
    cached_prompt_tokens: int = Field(default=0, ge=0, le=MAX_TOKEN_COUNT)
    completion_tokens: int = Field(default=0, ge=0, le=MAX_TOKEN_COUNT)
    # Part of completion_tokens, reported separately by reasoning models.
    reasoning_tokens: int = Field(default=0, ge=0, le=MAX_TOKEN_COUNT)
    latency_ms: int | None = Field(default=None, ge=0, le=MAX_TOKEN_COUNT)
    collector: Literal["tailer", "proxy"] = "tailer"
    session_id: str | None = Field(default=None, max_length=MAX_SESSION_ID_LENGTH)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime:
        if isinstance(v, str):
            v = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if isinstance(v, datetime):
            return to_utc(v)
        return v

    @property
    def usage_date(self) -> date:
        """UTC calendar date the event is aggregated under."""
        return self.timestamp.date()

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.cached_prompt_tokens + self.completion_tokens


@dataclass
class DailyDelta:
    """Increment applied to one DailyStat row."""

    prompt_tokens: int = 0
    cached_prompt_tokens: int = 0
    completion_tokens: int = 0
    request_count: int = 0

    @classmethod
    def from_event(cls, event: UsageEvent) -> "DailyDelta":
        return cls(
            prompt_tokens=event.prompt_tokens,
            cached_prompt_tokens=event.cached_prompt_tokens,
            completion_tokens=event.completion_tokens,
            request_count=1,
        )

    def add(self, other: "DailyDelta") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.cached_prompt_tokens += other.cached_prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.request_count += other.request_count


class CursorState(BaseModel):
    """Resume position for one tailed log file."""

    file_identity: str
    path: str
    byte_offset: int = Field(default=0, ge=0)
    generation: int = Field(default=0, ge=0)
    last_event_source_id: str | None = None
    parse_state: dict[str, Any] = Field(default_factory=dict)


class RecentEvent(BaseModel):
    """Usage event enriched with its resolved cost for the live view."""

    source_id: str
    timestamp: datetime
    model: str
    prompt_tokens: int
    cached_prompt_tokens: int
    completion_tokens: int
    reasoning_tokens: int = 0
    total_tokens: int
    latency_ms: int | None = None
    collector: str
    session_id: str | None = None
    cost: Decimal | None = None

    @classmethod
    def from_event(cls, event: UsageEvent, cost: Decimal | None) -> "RecentEvent":
        return cls(
            source_id=event.source_id,
            timestamp=event.timestamp,
            model=event.model,
            prompt_tokens=event.prompt_tokens,
            cached_prompt_tokens=event.cached_prompt_tokens,
            completion_tokens=event.completion_tokens,
            reasoning_tokens=event.reasoning_tokens,
            total_tokens=event.total_tokens,
            latency_ms=event.latency_ms,
            collector=event.collector,
            session_id=event.session_id,
            cost=cost,
        )


class DailyStatItem(BaseModel):
    """Single (date, model) aggregate with its resolved cost."""

    date: date
    model: str
    prompt_tokens: int
    cached_prompt_tokens: int
    completion_tokens: int
    request_count: int
    cost: Decimal | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.cached_prompt_tokens + self.completion_tokens


class PeriodTotals(BaseModel):
    """Totals for a date range. ``cost`` only sums priced rows."""

    label: str
    start_date: date
    end_date: date
    prompt_tokens: int = 0
    cached_prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0
    cost: Decimal = Decimal("0")
    unpriced_models: list[str] = Field(default_factory=list)

    @property
    def fully_priced(self) -> bool:
        return not self.unpriced_models


class SummaryResponse(BaseModel):
    """Summary cards for the display."""

    generated_at: datetime
    periods: list[PeriodTotals]


class DailyRangeResponse(BaseModel):
    """Daily aggregates for a date range."""

    start_date: date
    end_date: date
    items: list[DailyStatItem]
    totals: PeriodTotals


class PriceRuleCreate(BaseModel):
    """Payload for a new price rule."""

    model_prefix: str = Field(..., min_length=1, max_length=255)
    prompt_per_million: Decimal = Field(..., ge=0)
    cached_prompt_per_million: Decimal | None = Field(default=None, ge=0)
    completion_per_million: Decimal = Field(..., ge=0)
    effective_from: date


class PriceRuleUpdate(BaseModel):
    """Partial update of a price rule, including effective-date backfill."""

    prompt_per_million: Decimal | None = Field(default=None, ge=0)
    cached_prompt_per_million: Decimal | None = Field(default=None, ge=0)
    completion_per_million: Decimal | None = Field(default=None, ge=0)
    effective_from: date | None = None


class PriceRuleResponse(BaseModel):
    """Stored price rule."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    model_prefix: str
    prompt_per_million: Decimal
    cached_prompt_per_million: Decimal | None = None
    completion_per_million: Decimal
    effective_from: date


class PriceQuoteResponse(BaseModel):
    """Result of resolving a model on a date."""

    model: str
    as_of: date
    resolved: bool
    model_prefix: str | None = None
    effective_from: date | None = None
    is_default: bool = False
    prompt_per_million: Decimal | None = None
    cached_prompt_per_million: Decimal | None = None
    completion_per_million: Decimal | None = None


class RebuildRequest(BaseModel):
    """Rebuild trigger; destructive to derived tables only."""

    confirm: bool = False


class DriftRow(BaseModel):
    """A (date, model) key whose aggregate differs from its raw events."""

    date: date
    model: str
    expected: DailyDelta
    actual: DailyDelta | None = None


class RebuildReport(BaseModel):
    """Outcome of a rebuild."""

    started_at: datetime
    finished_at: datetime
    events_replayed: int
    daily_rows: int
    records_rescanned: int = 0
    drift: list[DriftRow] = Field(default_factory=list)


class LiveUpdate(BaseModel):
    """One frame of the live recent-events stream."""

    version: int
    events: list[RecentEvent]
