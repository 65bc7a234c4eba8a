"""Admin endpoints for quotas, copy cache and manual polls.

These endpoints are intended for operators and are out of the hot path.
In production, consider adding authentication (API key or admin token).
"""

import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from dealcast.models import AutomationRule
from dealcast.services.copywriter import get_copy_generator
from dealcast.services.pipeline import run_cycle
from dealcast.stores.postgres import get_session

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


class QuotaResetResponse(BaseModel):
    rule_id: int
    all_days: bool
    deleted: int


class CacheInvalidateResponse(BaseModel):
    rule_id: int
    listing: str | None
    deleted: int


class QuotaUsageResponse(BaseModel):
    rule_id: int
    plan: str
    day: str
    used: int
    limit: int
    remaining: int


class PollResponse(BaseModel):
    """Response from the manual poll endpoint."""

    success: bool
    report: dict


async def _get_rule_or_404(rule_id: int) -> AutomationRule:
    async with get_session() as session:
        result = await session.execute(
            select(AutomationRule).options(selectinload(AutomationRule.tenant)).where(AutomationRule.id == rule_id)
        )
        rule = result.scalar_one_or_none()
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")
    return rule


@router.post("/rules/{rule_id}/quota/reset", response_model=QuotaResetResponse)
async def reset_rule_quota(
    rule_id: int,
    all_days: bool = Query(False, alias="allDays"),
) -> QuotaResetResponse:
    """Reset a rule's generated-copy counter (today, or every stored day)."""
    await _get_rule_or_404(rule_id)
    deleted = await get_copy_generator().reset_quota(rule_id, all_days=all_days)
    return QuotaResetResponse(rule_id=rule_id, all_days=all_days, deleted=deleted)


@router.post("/rules/{rule_id}/copy-cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_rule_copy(
    rule_id: int,
    listing: str | None = Query(None, description="ASIN; omit to drop all cached copy of the rule"),
) -> CacheInvalidateResponse:
    """Drop cached copy so the next match regenerates it (e.g. after a style change)."""
    await _get_rule_or_404(rule_id)
    deleted = await get_copy_generator().invalidate(rule_id, listing)
    return CacheInvalidateResponse(rule_id=rule_id, listing=listing, deleted=deleted)


@router.get("/rules/{rule_id}/quota", response_model=QuotaUsageResponse)
async def get_rule_quota(rule_id: int) -> QuotaUsageResponse:
    """Today's usage against the tenant plan's daily quota."""
    rule = await _get_rule_or_404(rule_id)
    plan = rule.tenant.plan if rule.tenant else "FREE"
    usage = await get_copy_generator().usage(rule_id, plan)
    return QuotaUsageResponse(
        rule_id=rule_id,
        plan=plan,
        day=usage.day,
        used=usage.used,
        limit=usage.limit,
        remaining=usage.remaining,
    )


@router.post("/poll", response_model=PollResponse)
async def trigger_poll() -> PollResponse:
    """Run one poll → publish cycle now (503 when the source is down)."""
    report = await run_cycle()
    return PollResponse(success=True, report=report.to_dict())
