"""Purchase attempt state machine with an append-only audit trail."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from stocksniper.db.models import AttemptStatus, PurchaseAttempt, PurchaseAttemptEvent

logger = logging.getLogger(__name__)

FORWARD_PATH = [
    AttemptStatus.DETECTED,
    AttemptStatus.CARTED,
    AttemptStatus.CHECKOUT_STARTED,
    AttemptStatus.CHECKOUT_PAYMENT,
    AttemptStatus.SUCCESS,
]

TERMINAL_STATUSES = frozenset(
    {AttemptStatus.SUCCESS, AttemptStatus.FAILED, AttemptStatus.CANCELLED}
)


class InvalidTransition(Exception):
    """Requested status change is not allowed from the current status."""

    def __init__(self, attempt_id: int, current: str, requested: str):
        self.attempt_id = attempt_id
        self.current = current
        self.requested = requested
        super().__init__(f"Attempt {attempt_id}: cannot move {current} -> {requested}")


def is_terminal(status: str | AttemptStatus) -> bool:
    return AttemptStatus(status) in TERMINAL_STATUSES


def can_transition(current: str | AttemptStatus, target: str | AttemptStatus) -> bool:
    """
    Forward moves along the checkout path may skip steps; any non-terminal
    status may fall to failed/cancelled; terminal statuses never change.
    """
    current = AttemptStatus(current)
    target = AttemptStatus(target)

    if current in TERMINAL_STATUSES:
        return False
    if target in (AttemptStatus.FAILED, AttemptStatus.CANCELLED):
        return True
    return FORWARD_PATH.index(target) > FORWARD_PATH.index(current)


async def create_attempt(
    db: AsyncSession,
    tenant_id: int,
    watch_item_id: int,
) -> PurchaseAttempt:
    """Insert a new attempt in ``detected`` with its initial audit row."""
    attempt = PurchaseAttempt(
        tenant_id=tenant_id,
        watch_item_id=watch_item_id,
        status=AttemptStatus.DETECTED.value,
        steps_completed=[],
    )
    db.add(attempt)
    await db.flush()
    db.add(
        PurchaseAttemptEvent(
            attempt_id=attempt.id,
            from_status=None,
            to_status=AttemptStatus.DETECTED.value,
            reason="stock detected",
        )
    )
    await db.flush()
    return attempt


async def transition(
    db: AsyncSession,
    attempt: PurchaseAttempt,
    target: str | AttemptStatus,
    reason: Optional[str] = None,
    failure_reason: Optional[str] = None,
    order_ref: Optional[str] = None,
    total_price: Optional[Decimal] = None,
    steps_completed: Optional[list[str]] = None,
    path: Optional[str] = None,
    allow_same: bool = False,
) -> PurchaseAttempt:
    """
    Move an attempt to ``target`` and append an audit event.

    ``allow_same`` lets a non-terminal attempt record a final report that
    does not change its status (e.g. left in the cart for review).

    Raises:
        InvalidTransition: if the move is not allowed
    """
    target = AttemptStatus(target)
    current = attempt.status

    same = allow_same and current == target.value and not is_terminal(current)
    if not same and not can_transition(current, target):
        raise InvalidTransition(attempt.id, current, target.value)

    attempt.status = target.value
    attempt.updated_at = datetime.utcnow()
    if order_ref is not None:
        attempt.order_ref = order_ref
    if total_price is not None:
        attempt.total_price = total_price
    if steps_completed is not None:
        attempt.steps_completed = list(steps_completed)
    if path is not None:
        attempt.path = path
    if failure_reason is not None:
        attempt.failure_reason = failure_reason
    elif target == AttemptStatus.FAILED:
        attempt.failure_reason = reason
    reason = reason or failure_reason

    db.add(
        PurchaseAttemptEvent(
            attempt_id=attempt.id,
            from_status=current,
            to_status=target.value,
            reason=reason,
        )
    )
    await db.flush()

    logger.info(f"Attempt {attempt.id}: {current} -> {target.value}" + (f" ({reason})" if reason else ""))
    return attempt
