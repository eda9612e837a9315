"""
Pydantic Schemas
================
Event, aggregate and pricing models shared by the engine and the API.
"""

from codex_meter.schemas.usage import (
    CursorState,
    DailyDelta,
    DailyRangeResponse,
    DailyStatItem,
    DriftRow,
    LiveUpdate,
    PeriodTotals,
    PriceQuoteResponse,
    PriceRuleCreate,
    PriceRuleResponse,
    PriceRuleUpdate,
    RebuildReport,
    RebuildRequest,
    RecentEvent,
    SummaryResponse,
    UsageEvent,
)

__all__ = [
    "UsageEvent",
    "DailyDelta",
    "CursorState",
    "RecentEvent",
    "LiveUpdate",
    "DailyStatItem",
    "DailyRangeResponse",
    "PeriodTotals",
    "SummaryResponse",
    "PriceRuleCreate",
    "PriceRuleUpdate",
    "PriceRuleResponse",
    "PriceQuoteResponse",
    "RebuildRequest",
    "RebuildReport",
    "DriftRow",
]
