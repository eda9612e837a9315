"""
Token Usage Models
==================
Tables for raw usage events, daily aggregates, price rules and tailer cursors.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from codex_meter.models.base import Base, TimestampMixin


class UsageEventRecord(Base, TimestampMixin):
    """
    Raw usage events.
    Append-only; the primary key makes a second insert of the same source a no-op.
    """

    __tablename__ = "usage_events"

    source_id: Mapped[str] = mapped_column(String(512), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cached_prompt_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reasoning_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    latency_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    collector: Mapped[str] = mapped_column(String(16), nullable=False, default="tailer")
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_usage_events_timestamp", "timestamp"),
        Index("idx_usage_events_model_timestamp", "model", "timestamp"),
        Index("idx_usage_events_session", "session_id"),
    )


class DailyStat(Base):
    """
    Daily aggregated token usage per model.
    Only ever incremented, except when a rebuild truncates it.
    """

    __tablename__ = "daily_stats"

    date: Mapped[date] = mapped_column(Date, primary_key=True)
    model: Mapped[str] = mapped_column(String(255), primary_key=True)
    prompt_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cached_prompt_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    request_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class PriceRule(Base, TimestampMixin):
    """
    Effective-dated price per model prefix.
    Rows are never deleted; superseded rules stay for historical resolution.
    """

    __tablename__ = "price_rules"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    model_prefix: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt_per_million: Mapped[Decimal] = mapped_column(
        Numeric(20, 10),
        nullable=False,
    )
    cached_prompt_per_million: Mapped[Decimal | None] = mapped_column(
        Numeric(20, 10),
        nullable=True,
    )
    completion_per_million: Mapped[Decimal] = mapped_column(
        Numeric(20, 10),
        nullable=False,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "model_prefix", "effective_from",
            name="uq_price_rule_prefix_date"
        ),
    )


class CollectorCursor(Base, TimestampMixin):
    """
    Resume position of the log tailer, keyed by file identity (device:inode).
    Cursors of rotated files remain as history.
    """

    __tablename__ = "collector_cursors"

    file_identity: Mapped[str] = mapped_column(String(64), primary_key=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    byte_offset: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_event_source_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    parse_state: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_cursor_path", "path"),
    )
