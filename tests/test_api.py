"""
API Tests
=========
Tests for Codex Meter REST API endpoints.
"""

import asyncio
import json
from collections.abc import AsyncGenerator, Generator
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from codex_meter.api.endpoints.usage import live_updates
from codex_meter.config import Settings
from codex_meter.main import create_app
from codex_meter.runtime import MeterRuntime, StartupError
from codex_meter.services.aggregator import Aggregator
from codex_meter.services.store import EventStore

USAGE_RECORD = {
    "timestamp": "2025-03-01T12:00:00Z",
    "model": "gpt-4.1-mini",
    "usage": {"prompt_tokens": 1000, "completion_tokens": 500},
}


@pytest.fixture
def client(settings: Settings) -> Generator[TestClient, None, None]:
    """Test client running the full lifespan in tailer mode."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
async def meter(settings: Settings) -> AsyncGenerator[tuple[MeterRuntime, httpx.AsyncClient], None]:
    """Running tailer-mode app with direct access to its runtime."""
    app = create_app(settings)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://meter") as http:
            yield app.state.runtime, http


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_check(self, client: TestClient):
        """Test liveness check."""
        response = client.get("/_meter/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "version" in data

    def test_readiness_check(self, client: TestClient):
        """Test readiness check."""
        response = client.get("/_meter/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["database"] == "connected"
        assert data["collector"] == "tailer"
        assert data["dropped"] == 0

    def test_metrics_disabled(self, client: TestClient):
        assert client.get("/metrics").status_code == 404

    def test_no_proxy_in_tailer_mode(self, client: TestClient):
        assert client.post("/v1/chat/completions", json={}).status_code == 404


class TestUsageEndpoints:
    """Tests for usage views."""

    def test_summary_empty(self, client: TestClient):
        """Test summary with no data."""
        response = client.get("/_meter/usage/summary")
        assert response.status_code == 200
        periods = response.json()["periods"]

        assert [p["label"] for p in periods] == ["today", "week", "month", "last_12_months"]
        assert all(p["request_count"] == 0 for p in periods)
        assert all(p["unpriced_models"] == [] for p in periods)

    def test_daily_defaults(self, client: TestClient):
        response = client.get("/_meter/usage/daily")
        assert response.status_code == 200
        data = response.json()
        assert data["items"] == []
        assert data["totals"]["request_count"] == 0

    def test_daily_invalid_range(self, client: TestClient):
        response = client.get(
            "/_meter/usage/daily",
            params={"start_date": "2025-03-02", "end_date": "2025-03-01"},
        )
        assert response.status_code == 400

    def test_recent_empty(self, client: TestClient):
        response = client.get("/_meter/usage/recent", params={"limit": 10})
        assert response.status_code == 200
        assert response.json() == []

    def test_recent_limit_validated(self, client: TestClient):
        assert client.get("/_meter/usage/recent", params={"limit": 0}).status_code == 422

    async def test_logged_usage_is_visible(self, settings: Settings, meter):
        runtime, http = meter
        with open(settings.log_directory / "session.jsonl", "w") as f:
            f.write(json.dumps(USAGE_RECORD) + "\n")

        await runtime.tailer.scan_once()
        await runtime.channel.join()

        daily = (
            await http.get(
                "/_meter/usage/daily",
                params={"start_date": "2025-03-01", "end_date": "2025-03-01"},
            )
        ).json()
        assert len(daily["items"]) == 1
        assert Decimal(daily["items"][0]["cost"]) == Decimal("0.0012")
        assert Decimal(daily["totals"]["cost"]) == Decimal("0.0012")

        recent = (await http.get("/_meter/usage/recent")).json()
        assert recent[0]["model"] == "gpt-4.1-mini"
        assert recent[0]["total_tokens"] == 1500
        assert recent[0]["session_id"] is None
        assert recent[0]["reasoning_tokens"] == 0


class TestPricingEndpoints:
    """Tests for price rule management."""

    def test_list_seeded_rules(self, client: TestClient):
        response = client.get("/_meter/pricing")
        assert response.status_code == 200
        prefixes = {rule["model_prefix"] for rule in response.json()}
        assert prefixes == {"gpt-4.1", "gpt-4.1-mini"}

    def test_add_rule(self, client: TestClient):
        payload = {
            "model_prefix": "o3",
            "prompt_per_million": "2.00",
            "completion_per_million": "8.00",
            "effective_from": "2025-06-01",
        }

        response = client.post("/_meter/pricing", json=payload)
        assert response.status_code == 201
        assert response.json()["model_prefix"] == "o3"

        duplicate = client.post("/_meter/pricing", json=payload)
        assert duplicate.status_code == 409

    def test_add_rule_rejects_negative_rate(self, client: TestClient):
        response = client.post(
            "/_meter/pricing",
            json={
                "model_prefix": "o3",
                "prompt_per_million": "-1",
                "completion_per_million": "8",
                "effective_from": "2025-06-01",
            },
        )
        assert response.status_code == 422

    def test_backfill_effective_date(self, client: TestClient):
        rule = next(r for r in client.get("/_meter/pricing").json() if r["model_prefix"] == "gpt-4.1")

        response = client.patch(f"/_meter/pricing/{rule['id']}", json={"effective_from": "2024-01-01"})
        assert response.status_code == 200
        assert response.json()["effective_from"] == "2024-01-01"

        resolved = client.get(
            "/_meter/pricing/resolve",
            params={"model": "gpt-4.1-2025-04-14", "as_of": "2024-06-01"},
        ).json()
        assert resolved["resolved"] is True
        assert resolved["model_prefix"] == "gpt-4.1"

    def test_update_missing_rule(self, client: TestClient):
        response = client.patch(f"/_meter/pricing/{uuid4()}", json={"prompt_per_million": "1"})
        assert response.status_code == 404

    def test_resolve(self, client: TestClient):
        response = client.get(
            "/_meter/pricing/resolve",
            params={"model": "gpt-4.1-mini-2025-04-14", "as_of": "2025-03-01"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["resolved"] is True
        assert data["model_prefix"] == "gpt-4.1-mini"
        assert Decimal(data["prompt_per_million"]) == Decimal("0.40")

    def test_resolve_before_any_rule(self, client: TestClient):
        data = client.get(
            "/_meter/pricing/resolve",
            params={"model": "gpt-4.1-mini", "as_of": "2024-01-01"},
        ).json()
        assert data["resolved"] is False
        assert data["prompt_per_million"] is None


class TestRebuildEndpoints:
    """Tests for rebuild and verification."""

    def test_rebuild_requires_confirm(self, client: TestClient):
        response = client.post("/_meter/rebuild", json={})
        assert response.status_code == 400

    def test_rebuild(self, client: TestClient):
        response = client.post("/_meter/rebuild", json={"confirm": True})
        assert response.status_code == 200
        data = response.json()
        assert data["events_replayed"] == 0
        assert data["drift"] == []

    def test_verify(self, client: TestClient):
        response = client.get("/_meter/rebuild/verify")
        assert response.status_code == 200
        assert response.json() == []


class TestProxyMode:
    """Tests for the app running as an intercepting proxy."""

    async def test_forwarded_usage_is_recorded(self, settings: Settings):
        upstream_response = {"model": "gpt-4.1-mini", "usage": USAGE_RECORD["usage"]}
        upstream = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=upstream_response))
        )
        app = create_app(settings.model_copy(update={"collector_mode": "proxy"}), upstream_client=upstream)

        async with app.router.lifespan_context(app):
            runtime = app.state.runtime
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://meter") as http:
                response = await http.post("/v1/chat/completions", json={"model": "gpt-4.1-mini"})
                assert response.status_code == 200
                assert response.json() == upstream_response

                await runtime.channel.join()

                health = await http.get("/_meter/health")
                assert health.json()["status"] == "ok"

                recent = (await http.get("/_meter/usage/recent")).json()
                assert len(recent) == 1
                assert recent[0]["collector"] == "proxy"
                assert Decimal(recent[0]["cost"]) == Decimal("0.0012")

        await upstream.aclose()


class TestLiveStream:
    """Tests for the server-sent event generator."""

    async def test_snapshot_then_updates(self, priced_store: EventStore, channel, make_event):
        aggregator = Aggregator(priced_store, channel, flush_interval=0)
        await aggregator.prime()
        stream = live_updates(aggregator, limit=5, keepalive=0.05)

        first = await stream.__anext__()
        assert first.startswith("data: ")
        assert json.loads(first[len("data: "):])["events"] == []

        assert await stream.__anext__() == ": keepalive\n\n"

        await aggregator.process_event(make_event())
        update = json.loads((await asyncio.wait_for(stream.__anext__(), timeout=1))[len("data: "):])
        assert update["version"] == aggregator.version
        assert update["events"][0]["source_id"] == "evt-1"

        await stream.aclose()
        assert aggregator._subscribers == set()


class TestStartup:
    """Tests for startup failures."""

    async def test_unusable_database(self, settings: Settings, tmp_path: Path):
        runtime = MeterRuntime(settings.model_copy(update={"database_path": tmp_path}))

        with pytest.raises(StartupError):
            await runtime.start()
