"""
Usage Endpoints
===============
Read-only views over aggregates and the recent-events buffer.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import date, datetime, timedelta, timezone
from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from codex_meter.api.deps import RuntimeDep
from codex_meter.schemas.usage import (
    DailyRangeResponse,
    LiveUpdate,
    RecentEvent,
    SummaryResponse,
)
from codex_meter.services.aggregator import Aggregator
from codex_meter.services.store import totals_for

router = APIRouter()
logger = structlog.get_logger()

KEEPALIVE_SECONDS = 15.0


@router.get(
    "/summary",
    response_model=SummaryResponse,
    summary="Usage summary",
    description="Token and cost totals for today, this week, this month and the last 12 months",
)
async def get_summary(runtime: RuntimeDep) -> SummaryResponse:
    """
    Get summary cards.

    Cost only sums priced rows; models without a price are listed in
    ``unpriced_models`` for each period.
    """
    try:
        periods = await runtime.store.summary()
    except Exception as e:
        logger.error("Failed to build summary", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve usage summary",
        ) from e
    return SummaryResponse(generated_at=datetime.now(timezone.utc), periods=periods)


@router.get(
    "/daily",
    response_model=DailyRangeResponse,
    summary="Daily usage",
    description="Daily aggregates per model with cost resolved at read time",
)
async def get_daily(
    runtime: RuntimeDep,
    start_date: Annotated[date | None, Query(description="Start date (YYYY-MM-DD)")] = None,
    end_date: Annotated[date | None, Query(description="End date (YYYY-MM-DD)")] = None,
) -> DailyRangeResponse:
    """
    Get daily usage per model.

    Defaults to the last 30 days if no date range is specified.
    """
    end = end_date or datetime.now(timezone.utc).date()
    start = start_date or end - timedelta(days=29)
    if start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must not be after end_date",
        )

    items = await runtime.store.query_range(start, end)
    return DailyRangeResponse(
        start_date=start,
        end_date=end,
        items=items,
        totals=totals_for("range", start, end, items),
    )


@router.get(
    "/recent",
    response_model=list[RecentEvent],
    summary="Recent events",
    description="Newest events from the in-memory ring buffer",
)
async def get_recent(
    runtime: RuntimeDep,
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
) -> list[RecentEvent]:
    return runtime.aggregator.recent.snapshot(limit)


async def live_updates(
    aggregator: Aggregator,
    limit: int = 50,
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Server-sent events: a snapshot now, then one after every change."""
    queue = aggregator.subscribe()
    try:
        update = LiveUpdate(version=aggregator.version, events=aggregator.recent.snapshot(limit))
        yield f"data: {update.model_dump_json()}\n\n"
        while True:
            try:
                version = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            update = LiveUpdate(version=version, events=aggregator.recent.snapshot(limit))
            yield f"data: {update.model_dump_json()}\n\n"
    finally:
        aggregator.unsubscribe(queue)


@router.get(
    "/live",
    summary="Live recent events",
    description="Server-sent event stream of the recent-events view",
)
async def stream_live(
    runtime: RuntimeDep,
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
) -> StreamingResponse:
    return StreamingResponse(
        live_updates(runtime.aggregator, limit),
        media_type="text/event-stream",
    )
