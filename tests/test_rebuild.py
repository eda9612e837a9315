"""
Rebuild Tests
=============
Tests for rebuilding derived tables and drift verification.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import delete

from codex_meter.collectors.tailer import LogTailer
from codex_meter.core.channel import UsageChannel
from codex_meter.jobs.rebuild import RebuildController, RebuildNotConfirmed
from codex_meter.jobs.scheduler import JobScheduler
from codex_meter.models.usage import UsageEventRecord
from codex_meter.schemas.usage import DailyDelta
from codex_meter.services.aggregator import Aggregator
from codex_meter.services.store import EventStore

DAY = date(2025, 3, 1)


@pytest.fixture
async def pipeline(priced_store: EventStore) -> AsyncGenerator[tuple[UsageChannel, Aggregator], None]:
    channel = UsageChannel(capacity=16)
    aggregator = Aggregator(priced_store, channel, flush_interval=60)
    task = asyncio.create_task(aggregator.run())

    yield channel, aggregator

    await channel.close()
    await task


class TestRebuild:
    """Tests for the rebuild controller."""

    async def test_requires_confirmation(self, pipeline, priced_store: EventStore):
        channel, _ = pipeline
        controller = RebuildController(channel, priced_store)

        with pytest.raises(RebuildNotConfirmed):
            await controller.rebuild()

    async def test_rebuild_repairs_drift(self, pipeline, priced_store: EventStore, make_event):
        channel, _ = pipeline
        controller = RebuildController(channel, priced_store)
        for i in range(4):
            await channel.send(make_event(f"evt-{i}"))
        await controller.flush()

        await priced_store.upsert_daily(DAY, "gpt-4.1-mini", DailyDelta(1, 1, 1, 1))
        await priced_store.upsert_daily(date(2025, 2, 1), "ghost", DailyDelta(5, 0, 5, 1))
        drift = await controller.verify()
        assert {(row.date, row.model) for row in drift} == {(DAY, "gpt-4.1-mini"), (date(2025, 2, 1), "ghost")}

        report = await controller.rebuild(confirm=True)

        assert report.events_replayed == 4
        assert report.drift == []
        assert report.daily_rows == 1
        assert await controller.verify() == []
        assert await priced_store.daily_totals() == await priced_store.event_totals()

    async def test_rebuild_keeps_raw_events_and_prices(self, pipeline, priced_store: EventStore, make_event):
        channel, _ = pipeline
        controller = RebuildController(channel, priced_store)
        await channel.send(make_event())

        await controller.rebuild(confirm=True)

        assert await priced_store.count_events() == 1
        assert len(await priced_store.list_price_rules()) == 1

    async def test_rebuild_rereads_logs(self, pipeline, priced_store: EventStore, tmp_path: Path):
        """Records missing from the store are ingested again by the rescan."""
        channel, _ = pipeline
        logs = tmp_path / "sessions"
        logs.mkdir()
        with open(logs / "a.jsonl", "w") as f:
            for n in range(3):
                record = {
                    "timestamp": f"2025-03-01T00:00:0{n}Z",
                    "model": "gpt-4.1-mini",
                    "usage": {"prompt_tokens": 10, "completion_tokens": 1},
                }
                f.write(json.dumps(record) + "\n")

        tailer = LogTailer(logs, channel, priced_store)
        controller = RebuildController(channel, priced_store, tailer=tailer)
        await tailer.scan_once()
        await controller.flush()

        # Lose one raw event.
        victim = (await priced_store.recent_events(limit=1))[0].source_id
        async with priced_store.database.session() as session:
            await session.execute(delete(UsageEventRecord).where(UsageEventRecord.source_id == victim))
        assert await priced_store.count_events() == 2

        report = await controller.rebuild(confirm=True)

        assert report.events_replayed == 2
        assert report.records_rescanned == 3
        assert report.drift == []
        assert await priced_store.count_events() == 3
        assert (await priced_store.daily_totals())[(DAY, "gpt-4.1-mini")].request_count == 3

    async def test_verify_until_ignores_later_days(self, pipeline, priced_store: EventStore):
        channel, _ = pipeline
        controller = RebuildController(channel, priced_store)
        await priced_store.upsert_daily(DAY, "gpt-4.1-mini", DailyDelta(1, 0, 1, 1))

        assert len(await controller.verify()) == 1
        assert await controller.verify(until=date(2025, 2, 28)) == []


class TestDriftCheckJob:
    """Tests for the scheduled drift check."""

    async def test_reports_drift_count(self, pipeline, priced_store: EventStore):
        channel, _ = pipeline
        controller = RebuildController(channel, priced_store)
        await priced_store.upsert_daily(DAY, "gpt-4.1-mini", DailyDelta(1, 0, 1, 1))

        scheduler = JobScheduler(controller, drift_check_hour=4)
        scheduler.setup()

        assert await scheduler.run_drift_check() == 1
        assert scheduler.scheduler.get_job("drift_check") is not None
