"""
Database Models
===============
SQLAlchemy ORM models for the usage meter.
"""

from codex_meter.models.base import Base
from codex_meter.models.usage import (
    CollectorCursor,
    DailyStat,
    PriceRule,
    UsageEventRecord,
)

__all__ = [
    "Base",
    "UsageEventRecord",
    "DailyStat",
    "PriceRule",
    "CollectorCursor",
]
