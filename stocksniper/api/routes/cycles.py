"""Stock-check cycle API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from stocksniper.api.deps import get_database, require_admin_api_key
from stocksniper.db.models import WatchItem
from stocksniper.dispatch.jobs import StockCheckJob
from stocksniper.worker.locks import CYCLE_LOCK_KEY, lock_age_seconds
from stocksniper.worker.tasks import task_runner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cycles", tags=["cycles"])


class CycleSummaryResponse(BaseModel):
    """Response model for a finished (or skipped) cycle."""
    run_id: str
    trigger: str
    status: str
    due: int
    checked: int
    tenants: int
    stock_found: int
    triggered: int
    skipped: int
    errors: int
    budget_exhausted: bool
    duration_seconds: float
    error_messages: List[str]


class ItemCheckResponse(BaseModel):
    watch_item_id: int
    message_id: str
    duplicate: bool


class CycleLockResponse(BaseModel):
    held: bool
    owner: Optional[str] = None
    ttl_seconds: Optional[int] = None
    age_seconds: Optional[float] = None


@router.post(
    "/run",
    response_model=CycleSummaryResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_cycle_now():
    """Run one cycle immediately; returns ``status=skipped`` if one is running."""
    summary = await task_runner.run_cycle(trigger="manual")
    return CycleSummaryResponse(**summary.to_dict())


@router.get(
    "/lock",
    response_model=CycleLockResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def get_cycle_lock():
    """Who holds the cycle lock, if anyone."""
    info = await task_runner.locks.get_lock_info(CYCLE_LOCK_KEY)
    if not info:
        return CycleLockResponse(held=False)
    return CycleLockResponse(
        held=True,
        owner=info.get("owner"),
        ttl_seconds=info.get("ttl_seconds"),
        age_seconds=lock_age_seconds(info),
    )


@router.post(
    "/items/{watch_item_id}/check",
    response_model=ItemCheckResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def queue_item_check(watch_item_id: int, db: AsyncSession = Depends(get_database)):
    """Queue an out-of-cycle stock check for one watch item."""
    item = await db.get(WatchItem, watch_item_id)
    if item is None or not item.active:
        raise HTTPException(status_code=404, detail="Watch item not found")

    published = await task_runner.dispatcher.dispatch_stock_check(
        StockCheckJob(watch_item_id=item.id, tenant_id=item.tenant_id)
    )
    logger.info(f"Queued stock check for item {item.id} ({published.message_id})")
    return ItemCheckResponse(
        watch_item_id=item.id,
        message_id=published.message_id,
        duplicate=published.duplicate,
    )
