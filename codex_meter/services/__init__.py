"""
Business Services
=================
Event store and the aggregation pipeline.
"""

from codex_meter.services.aggregator import Aggregator, RecentEvents
from codex_meter.services.store import AppendResult, EventStore, StoreWriteError

__all__ = ["Aggregator", "AppendResult", "EventStore", "RecentEvents", "StoreWriteError"]
