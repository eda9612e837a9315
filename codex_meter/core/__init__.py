"""
Core Business Logic
====================
Price resolution, cost calculation and the usage channel.
"""

from codex_meter.core.channel import (
    ChannelClosed,
    FlushCommand,
    RebuildCommand,
    UsageChannel,
)
from codex_meter.core.pricing import (
    DefaultRate,
    PriceQuote,
    PriceRuleData,
    PriceTimeline,
    calculate_cost,
    load_seed_rules,
    resolve_price,
)

__all__ = [
    "ChannelClosed",
    "DefaultRate",
    "FlushCommand",
    "PriceQuote",
    "PriceRuleData",
    "PriceTimeline",
    "RebuildCommand",
    "UsageChannel",
    "calculate_cost",
    "load_seed_rules",
    "resolve_price",
]
