"""Worker -> core status callbacks."""

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from stocksniper import metrics
from stocksniper.api.deps import get_database, require_worker_api_key
from stocksniper.autobuy.attempts import InvalidTransition, is_terminal, transition
from stocksniper.db.models import (
    ActivityEventType,
    ActivityLog,
    AttemptStatus,
    PurchaseAttempt,
    WatchItem,
)
from stocksniper.notify.webhook import notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/callbacks", tags=["callbacks"])

ACTIVITY_FOR_STATUS = {
    AttemptStatus.CARTED: ActivityEventType.CART_ADD,
    AttemptStatus.CHECKOUT_STARTED: ActivityEventType.CHECKOUT_START,
    AttemptStatus.CHECKOUT_PAYMENT: ActivityEventType.CHECKOUT_START,
    AttemptStatus.SUCCESS: ActivityEventType.CHECKOUT_COMPLETE,
    AttemptStatus.FAILED: ActivityEventType.CHECKOUT_FAILED,
    AttemptStatus.CANCELLED: ActivityEventType.CHECKOUT_FAILED,
}


class CallbackResult(BaseModel):
    """Purchase result contract, or an intermediate status with a note."""
    status: str
    order_ref: Optional[str] = None
    total_price: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    note: Optional[str] = None
    steps_completed: Optional[List[str]] = None
    path: Optional[str] = None


class PurchaseCallback(BaseModel):
    attempt_id: int
    watch_item_id: int
    tenant_id: int
    result: CallbackResult


class CallbackResponse(BaseModel):
    status: str  # applied | ignored
    attempt_id: int
    attempt_status: str


@router.post(
    "/purchase",
    response_model=CallbackResponse,
    dependencies=[Depends(require_worker_api_key)],
)
async def purchase_callback(payload: PurchaseCallback, db: AsyncSession = Depends(get_database)):
    """
    Apply a status reported by the purchase worker.

    Reports for an attempt that is already terminal are acknowledged and
    ignored, so redelivered callbacks are harmless. A move the state machine
    does not allow is rejected with 409.
    """
    result = payload.result
    try:
        target = AttemptStatus(result.status)
    except ValueError:
        metrics.record_callback("invalid")
        raise HTTPException(status_code=422, detail=f"Unknown attempt status: {result.status}")

    attempt = await db.get(PurchaseAttempt, payload.attempt_id)
    if (
        attempt is None
        or attempt.watch_item_id != payload.watch_item_id
        or attempt.tenant_id != payload.tenant_id
    ):
        metrics.record_callback("not_found")
        raise HTTPException(status_code=404, detail="Purchase attempt not found")

    repeated = attempt.status == target.value
    if is_terminal(attempt.status) or (repeated and not result.failure_reason):
        metrics.record_callback("ignored")
        logger.info(f"Ignoring {target.value} report for attempt {attempt.id} (already {attempt.status})")
        return CallbackResponse(status="ignored", attempt_id=attempt.id, attempt_status=attempt.status)

    try:
        await transition(
            db,
            attempt,
            target,
            reason=result.note,
            failure_reason=result.failure_reason,
            order_ref=result.order_ref,
            total_price=result.total_price,
            steps_completed=result.steps_completed,
            path=result.path,
            allow_same=repeated,
        )
    except InvalidTransition as e:
        await db.rollback()
        metrics.record_callback("rejected")
        raise HTTPException(status_code=409, detail=str(e))

    details = {k: v for k, v in result.model_dump(mode="json").items() if v is not None}
    details["attempt_id"] = attempt.id
    db.add(
        ActivityLog(
            tenant_id=attempt.tenant_id,
            watch_item_id=attempt.watch_item_id,
            event_type=ACTIVITY_FOR_STATUS[target].value,
            details=details,
        )
    )

    if target == AttemptStatus.SUCCESS:
        item = await db.get(WatchItem, attempt.watch_item_id)
        if item is not None:
            item.active = False
    await db.commit()
    metrics.record_callback(target.value)

    # Final outcomes (including "left in cart for review") go to the sink
    if is_terminal(target) or (target == AttemptStatus.CARTED and result.failure_reason):
        sent = await notifier.purchase_outcome(
            attempt.tenant_id,
            attempt.watch_item_id,
            attempt.id,
            target.value,
            order_ref=attempt.order_ref,
            total_price=attempt.total_price,
            failure_reason=attempt.failure_reason,
        )
        if sent:
            db.add(
                ActivityLog(
                    tenant_id=attempt.tenant_id,
                    watch_item_id=attempt.watch_item_id,
                    event_type=ActivityEventType.NOTIFICATION_SENT.value,
                    details={"attempt_id": attempt.id, "status": target.value},
                )
            )
            await db.commit()

    return CallbackResponse(status="applied", attempt_id=attempt.id, attempt_status=attempt.status)
