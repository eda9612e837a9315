"""
Test Configuration
==================
Pytest fixtures for Codex Meter tests.
"""

from collections.abc import AsyncGenerator, Callable
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from codex_meter.config import Settings
from codex_meter.core.channel import UsageChannel
from codex_meter.core.pricing import PriceRuleData
from codex_meter.database import Database
from codex_meter.schemas.usage import UsageEvent
from codex_meter.services.store import EventStore

PRICING_YAML = """\
effective_from: 2025-01-01
models:
  gpt-4.1-mini:
    prompt_per_million: 0.40
    cached_prompt_per_million: 0.10
    completion_per_million: 1.60
  gpt-4.1:
    prompt_per_million: 2.00
    completion_per_million: 8.00
"""


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Per-test SQLite file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}"


@pytest.fixture
async def database(db_url: str) -> AsyncGenerator[Database, None]:
    """Initialized database, disposed after the test."""
    db = Database(db_url)
    await db.init()

    yield db

    await db.close()


@pytest.fixture
async def store(database: Database) -> EventStore:
    """Empty event store without price rules."""
    return EventStore(database)


@pytest.fixture
async def priced_store(store: EventStore) -> EventStore:
    """Event store seeded with a single gpt-4.1-mini rule."""
    await store.seed_prices_if_empty(
        [
            PriceRuleData(
                model_prefix="gpt-4.1-mini",
                prompt_per_million=Decimal("0.40"),
                completion_per_million=Decimal("1.60"),
                effective_from=date(2025, 1, 1),
            )
        ]
    )
    return store


@pytest.fixture
def channel() -> UsageChannel:
    return UsageChannel(capacity=64, shutdown_timeout=0.1)


@pytest.fixture
def make_event() -> Callable[..., UsageEvent]:
    """Factory for usage events with sensible defaults."""

    def _make(
        source_id: str = "evt-1",
        timestamp: str = "2025-03-01T12:00:00Z",
        model: str = "gpt-4.1-mini",
        prompt_tokens: int = 1000,
        cached_prompt_tokens: int = 0,
        completion_tokens: int = 500,
        collector: str = "tailer",
    ) -> UsageEvent:
        return UsageEvent(
            source_id=source_id,
            timestamp=timestamp,
            model=model,
            prompt_tokens=prompt_tokens,
            cached_prompt_tokens=cached_prompt_tokens,
            completion_tokens=completion_tokens,
            collector=collector,
        )

    return _make


@pytest.fixture
def pricing_config(tmp_path: Path) -> Path:
    """Seed pricing file with two gpt-4.1 rules."""
    pricing = tmp_path / "pricing.yaml"
    pricing.write_text(PRICING_YAML)
    return pricing


@pytest.fixture
def settings(tmp_path: Path, pricing_config: Path) -> Settings:
    """Settings pointing every path at the test's temp directory."""
    sessions = tmp_path / "sessions"
    sessions.mkdir()

    return Settings(
        collector_mode="tailer",
        database_path=tmp_path / "usage.db",
        log_directory=sessions,
        pricing_config_path=pricing_config,
        poll_interval_seconds=30.0,
        flush_interval_seconds=0,
        scheduler_enabled=False,
        metrics_enabled=False,
        upstream_base_url="https://api.example.com/v1",
    )
