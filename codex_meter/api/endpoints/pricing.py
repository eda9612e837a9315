"""
Pricing Endpoints
=================
List, add and edit effective-dated price rules. Rules are never deleted.
"""

from datetime import date, datetime, timezone
from typing import Annotated
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from codex_meter.api.deps import RuntimeDep
from codex_meter.schemas.usage import (
    PriceQuoteResponse,
    PriceRuleCreate,
    PriceRuleResponse,
    PriceRuleUpdate,
)
from codex_meter.services.store import PriceRuleConflictError, PriceRuleNotFoundError

router = APIRouter()
logger = structlog.get_logger()


@router.get(
    "",
    response_model=list[PriceRuleResponse],
    summary="List price rules",
)
async def list_price_rules(runtime: RuntimeDep) -> list[PriceRuleResponse]:
    rules = await runtime.store.list_price_rules()
    return [PriceRuleResponse.model_validate(rule) for rule in rules]


@router.post(
    "",
    response_model=PriceRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a price rule",
    description="Add a rule to a prefix timeline; earlier rules stay in effect for earlier dates",
)
async def add_price_rule(data: PriceRuleCreate, runtime: RuntimeDep) -> PriceRuleResponse:
    try:
        rule = await runtime.store.add_price_rule(data)
    except PriceRuleConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    await runtime.aggregator.reload_pricing()
    return PriceRuleResponse.model_validate(rule)


@router.patch(
    "/{rule_id}",
    response_model=PriceRuleResponse,
    summary="Edit a price rule",
    description="Change rates or backfill the effective date of one rule",
)
async def update_price_rule(
    rule_id: UUID,
    changes: PriceRuleUpdate,
    runtime: RuntimeDep,
) -> PriceRuleResponse:
    """
    Edit one rule.

    Nothing else is rewritten: every cost shown afterwards is recomputed
    against the edited timeline.
    """
    try:
        rule = await runtime.store.update_price_rule(rule_id, changes)
    except PriceRuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except PriceRuleConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    await runtime.aggregator.reload_pricing()
    return PriceRuleResponse.model_validate(rule)


@router.get(
    "/resolve",
    response_model=PriceQuoteResponse,
    summary="Resolve a price",
    description="Show which rule applies to a model on a date",
)
async def resolve_price(
    runtime: RuntimeDep,
    model: Annotated[str, Query(min_length=1)],
    as_of: Annotated[date | None, Query(description="Date (YYYY-MM-DD), defaults to today")] = None,
) -> PriceQuoteResponse:
    as_of = as_of or datetime.now(timezone.utc).date()
    timeline = await runtime.store.price_timeline()
    quote = timeline.resolve(model, as_of)
    if quote is None:
        return PriceQuoteResponse(model=model, as_of=as_of, resolved=False)

    return PriceQuoteResponse(
        model=model,
        as_of=as_of,
        resolved=True,
        model_prefix=quote.model_prefix,
        effective_from=quote.effective_from,
        is_default=quote.is_default,
        prompt_per_million=quote.prompt_per_million,
        cached_prompt_per_million=quote.cached_prompt_per_million,
        completion_per_million=quote.completion_per_million,
    )
