"""Periodic stock-check cycle and purchase triggering."""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksniper import metrics
from stocksniper.autobuy.attempts import TERMINAL_STATUSES, create_attempt, transition
from stocksniper.config import settings
from stocksniper.db.models import (
    ActivityEventType,
    ActivityLog,
    AttemptStatus,
    PurchaseAttempt,
    StockStatus,
    Tenant,
    Tier,
    WatchItem,
    WatchMode,
)
from stocksniper.dispatch.dispatcher import Dispatcher
from stocksniper.dispatch.jobs import AutoPurchaseJob
from stocksniper.notify.webhook import NotificationSink, notifier
from stocksniper.resolve.base import ResolutionError, StockSnapshot
from stocksniper.resolve.resolver import CycleSnapshotCache, Resolver
from stocksniper.vault import has_credentials
from stocksniper.worker.locks import (
    CYCLE_LOCK_KEY,
    LockManager,
    item_lock_key,
    lock_manager,
    purchase_lock_key,
)

logger = logging.getLogger(__name__)


def tier_limits(tier: str) -> dict[str, int]:
    return settings.tier_limits.get(tier) or settings.tier_limits[Tier.FREE.value]


def effective_interval(poll_interval_seconds: int, tier: str) -> int:
    """An item is never polled faster than its tenant's tier allows."""
    return max(poll_interval_seconds, tier_limits(tier)["min_poll_interval_seconds"])


def is_due(item: WatchItem, tier: str, now: datetime) -> bool:
    if item.last_checked_at is None:
        return True
    elapsed = (now - item.last_checked_at).total_seconds()
    return elapsed >= effective_interval(item.poll_interval_seconds, tier)


def fair_interleave(items: list, cap: int, tenant_of: Callable[[Any], int] = lambda item: item.tenant_id) -> list:
    """
    Round-robin across tenants, keeping each tenant's own order.

    A tenant with many due items cannot starve the others out of a capped
    cycle.
    """
    by_tenant: "OrderedDict[int, list]" = OrderedDict()
    for item in items:
        by_tenant.setdefault(tenant_of(item), []).append(item)

    queues = list(by_tenant.values())
    result = []
    index = 0
    while len(result) < cap and any(index < len(q) for q in queues):
        for queue in queues:
            if index < len(queue):
                result.append(queue[index])
                if len(result) >= cap:
                    break
        index += 1
    return result


@dataclass
class CycleSummary:
    run_id: str
    trigger: str
    status: str = "completed"  # completed | skipped | failed
    due: int = 0
    checked: int = 0
    tenants: int = 0
    stock_found: int = 0
    triggered: int = 0
    skipped: int = 0
    errors: int = 0
    budget_exhausted: bool = False
    duration_seconds: float = 0.0
    error_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CycleRunner:
    """
    Runs stock-check cycles.

    One cycle at a time across all processes (Redis cycle lock), one checker
    per item (item lock), one purchase in flight per item (purchase lock).
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        resolver: Optional[Resolver] = None,
        locks: Optional[LockManager] = None,
        dispatcher: Optional[Dispatcher] = None,
        notification_sink: Optional[NotificationSink] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if session_factory is None:
            from stocksniper.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self.resolver = resolver or Resolver()
        self.locks = locks or lock_manager
        self.dispatcher = dispatcher or Dispatcher()
        self.notifier = notification_sink or notifier
        self._sleep = sleep
        self._clock = clock

    async def close(self):
        await self.resolver.close()
        await self.dispatcher.close()
        await self.notifier.close()
        await self.locks.close()

    async def run_scheduled_cycle(self):
        """APScheduler entrypoint."""
        await self.run_cycle(trigger="scheduled")

    async def run_cycle(self, trigger: str = "scheduled") -> CycleSummary:
        run_id = uuid4().hex
        summary = CycleSummary(run_id=run_id, trigger=trigger)
        start = self._clock()

        token = await self.locks.acquire(CYCLE_LOCK_KEY, settings.cycle_lock_ttl_seconds, owner=run_id)
        if not token:
            info = await self.locks.get_lock_info(CYCLE_LOCK_KEY)
            logger.info(
                f"Cycle already running; skipping {trigger} run "
                f"(holder: {info.get('owner') if info else None})"
            )
            summary.status = "skipped"
            metrics.record_cycle(trigger, "skipped")
            return summary

        logger.info(f"Starting stock-check cycle (trigger: {trigger}, run_id: {run_id[:16]})")
        try:
            now = datetime.utcnow()
            async with self._session_factory() as db:
                due = await self.select_due(db, now)

            batch = fair_interleave(due, settings.max_items_per_cycle, tenant_of=lambda row: row[0].tenant_id)
            summary.due = len(due)
            summary.tenants = len({item.tenant_id for item, _ in batch})
            cache = CycleSnapshotCache(self.resolver)

            for position, (item, tier) in enumerate(batch):
                if self._clock() - start >= settings.cycle_budget_seconds:
                    summary.budget_exhausted = True
                    logger.warning(
                        f"Cycle budget of {settings.cycle_budget_seconds}s reached after "
                        f"{summary.checked} items; {len(batch) - position} deferred"
                    )
                    break
                if position > 0 and settings.inter_item_delay_ms:
                    await self._sleep(settings.inter_item_delay_ms / 1000)
                # Cover the next item's worst-case check
                lock_ttl = max(settings.cycle_lock_ttl_seconds, settings.item_lock_ttl_seconds)
                if not await self.locks.refresh(CYCLE_LOCK_KEY, token, lock_ttl):
                    logger.warning(
                        f"Cycle lock for run_id {run_id[:16]} lost after {summary.checked} items; stopping"
                    )
                    summary.error_messages.append("cycle lock lost")
                    break
                await self.check_item(item.id, tier, cache, summary)

            logger.info(
                f"Cycle complete: {summary.checked}/{summary.due} checked, "
                f"{summary.stock_found} in stock, {summary.triggered} purchases triggered, "
                f"{summary.errors} errors ({cache.hits} cache hits)"
            )
        except Exception as e:
            summary.status = "failed"
            summary.error_messages.append(str(e)[:500])
            logger.error(f"Stock-check cycle failed: {e}", exc_info=True)
            raise
        finally:
            summary.duration_seconds = self._clock() - start
            metrics.record_cycle(trigger, summary.status, summary.duration_seconds)
            released = await self.locks.release(CYCLE_LOCK_KEY, token)
            if not released:
                logger.warning(f"Cycle lock for run_id {run_id[:16]} expired before release")

        return summary

    async def select_due(self, db: AsyncSession, now: datetime) -> list[tuple[WatchItem, str]]:
        """Active items of active tenants that are due, oldest check first."""
        result = await db.execute(
            select(WatchItem, Tenant.tier)
            .join(Tenant, WatchItem.tenant_id == Tenant.id)
            .where(WatchItem.active.is_(True), Tenant.active.is_(True))
            .order_by(WatchItem.last_checked_at.asc().nulls_first(), WatchItem.id)
        )
        return [(item, tier) for item, tier in result.all() if is_due(item, tier, now)]

    async def check_single(self, watch_item_id: int) -> CycleSummary:
        """Check one item outside the periodic cycle."""
        summary = CycleSummary(run_id=uuid4().hex, trigger="on_demand")
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    select(WatchItem, Tenant.tier)
                    .join(Tenant, WatchItem.tenant_id == Tenant.id)
                    .where(WatchItem.id == watch_item_id)
                )
            ).first()
        if row is None:
            logger.warning(f"Watch item {watch_item_id} not found")
            summary.status = "failed"
            return summary
        item, tier = row
        summary.due = 1
        summary.tenants = 1
        await self.check_item(item.id, tier, CycleSnapshotCache(self.resolver), summary)
        return summary

    async def check_item(self, item_id: int, tier: str, cache: CycleSnapshotCache, summary: CycleSummary):
        lock_key = item_lock_key(item_id)
        token = await self.locks.acquire(lock_key, settings.item_lock_ttl_seconds, owner=summary.run_id)
        if not token:
            logger.info(f"Item {item_id} is being checked elsewhere; skipping")
            summary.skipped += 1
            metrics.record_cycle_item("locked")
            return

        try:
            async with self._session_factory() as db:
                item = await db.get(WatchItem, item_id)
                if item is None or not item.active:
                    return
                try:
                    snapshot = await self._resolve(cache, item.product_url)
                except ResolutionError as e:
                    summary.errors += 1
                    summary.error_messages.append(f"item {item_id}: {e}"[:300])
                    metrics.record_cycle_item("error")
                    logger.warning(f"Could not resolve item {item_id}: {e}")
                    db.add(
                        ActivityLog(
                            tenant_id=item.tenant_id,
                            watch_item_id=item.id,
                            event_type=ActivityEventType.RESOLUTION_ERROR.value,
                            details={"error": str(e)[:500]},
                        )
                    )
                    await db.commit()
                    return

                first_check = item.last_checked_at is None
                await self._persist_snapshot(db, item, snapshot)
                summary.checked += 1

                if snapshot.in_stock:
                    summary.stock_found += 1
                    metrics.record_cycle_item("in_stock")
                    self._log_activity(db, item, ActivityEventType.STOCK_FOUND, snapshot.to_dict())
                else:
                    metrics.record_cycle_item("out_of_stock")
                    if first_check:
                        self._log_activity(db, item, ActivityEventType.STOCK_CHECK, snapshot.to_dict())
                await db.commit()

                if snapshot.in_stock:
                    if item.mode == WatchMode.NOTIFY.value:
                        await self.notifier.stock_alert(
                            item.tenant_id, item.id, item.product_url, snapshot.to_dict()
                        )
                    else:
                        await self.maybe_trigger_purchase(db, item, tier, snapshot, summary)
        except Exception as e:
            summary.errors += 1
            summary.error_messages.append(f"item {item_id}: {e}"[:300])
            metrics.record_cycle_item("error")
            logger.error(f"Unexpected error checking item {item_id}: {e}", exc_info=True)
            await self._log_error(item_id, str(e))
        finally:
            await self.locks.release(lock_key, token)

    async def _resolve(self, cache: CycleSnapshotCache, locator: str) -> StockSnapshot:
        """Resolve within the item lock's lifetime."""
        try:
            return await asyncio.wait_for(
                cache.resolve(locator),
                timeout=settings.item_resolve_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ResolutionError(
                f"Resolution of {locator} exceeded {settings.item_resolve_timeout_seconds}s"
            )

    async def _persist_snapshot(self, db: AsyncSession, item: WatchItem, snapshot: StockSnapshot):
        """One UPDATE for every field the check touches."""
        values: dict[str, Any] = {
            "last_checked_at": datetime.utcnow(),
            "last_status": StockStatus.IN_STOCK.value if snapshot.in_stock else StockStatus.OUT_OF_STOCK.value,
        }
        if snapshot.price is not None:
            values["last_price"] = snapshot.price
        if snapshot.display_name:
            values["display_name"] = snapshot.display_name
        if snapshot.image:
            values["image_url"] = snapshot.image

        await db.execute(update(WatchItem).where(WatchItem.id == item.id).values(**values))
        for key, value in values.items():
            setattr(item, key, value)

    def _log_activity(self, db: AsyncSession, item: WatchItem, event: ActivityEventType, details: dict):
        db.add(
            ActivityLog(
                tenant_id=item.tenant_id,
                watch_item_id=item.id,
                event_type=event.value,
                details=details,
            )
        )

    async def _log_error(self, item_id: int, message: str):
        try:
            async with self._session_factory() as db:
                item = await db.get(WatchItem, item_id)
                if item is None:
                    return
                self._log_activity(db, item, ActivityEventType.ERROR, {"error": message[:500]})
                await db.commit()
        except Exception as e:
            logger.error(f"Could not record error activity for item {item_id}: {e}")

    async def _skip(self, db: AsyncSession, item: WatchItem, summary: CycleSummary, reason: str):
        summary.skipped += 1
        logger.info(f"Purchase for item {item.id} skipped: {reason}")
        self._log_activity(db, item, ActivityEventType.PURCHASE_SKIPPED, {"reason": reason})
        await db.commit()

    async def open_attempt(self, db: AsyncSession, item_id: int) -> Optional[tuple[int, str]]:
        """(id, status) of a non-terminal attempt on the item, if any."""
        result = await db.execute(
            select(PurchaseAttempt.id, PurchaseAttempt.status)
            .where(
                PurchaseAttempt.watch_item_id == item_id,
                PurchaseAttempt.status.not_in([s.value for s in TERMINAL_STATUSES]),
            )
            .order_by(PurchaseAttempt.id.desc())
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def maybe_trigger_purchase(
        self,
        db: AsyncSession,
        item: WatchItem,
        tier: str,
        snapshot: StockSnapshot,
        summary: CycleSummary,
    ) -> Optional[int]:
        """
        Hand an in-stock auto-purchase item to the worker when every gate
        passes.

        Returns:
            The new attempt id, or None when nothing was dispatched
        """
        if not snapshot.in_stock or item.mode != WatchMode.AUTO_PURCHASE.value:
            return None

        if item.price_ceiling is not None:
            if snapshot.price is None:
                await self._skip(db, item, summary, "price unknown with ceiling set")
                return None
            if snapshot.price > item.price_ceiling:
                await self._skip(
                    db, item, summary, f"price {snapshot.price} exceeds ceiling {item.price_ceiling}"
                )
                return None

        # An open attempt outlives the purchase lock when a checkout runs long
        # or sits in the queue; it must reach a terminal status first
        open_attempt = await self.open_attempt(db, item.id)
        if open_attempt is not None:
            summary.skipped += 1
            logger.info(
                f"Purchase for item {item.id} skipped: attempt {open_attempt[0]} is still {open_attempt[1]}"
            )
            return None

        quota = tier_limits(tier)["max_concurrent_sessions"]
        active_sessions = await self.locks.get_session_count(item.tenant_id)
        if active_sessions >= quota:
            await self._skip(db, item, summary, f"session quota reached ({active_sessions}/{quota})")
            return None

        if not await has_credentials(db, item.tenant_id, item.retailer):
            await self._skip(db, item, summary, "no retailer credentials")
            return None

        lock_key = purchase_lock_key(item.id)
        token = await self.locks.acquire(lock_key, settings.purchase_lock_ttl_seconds, owner=summary.run_id)
        if not token:
            summary.skipped += 1
            logger.info(f"Purchase already in flight for item {item.id}")
            return None

        attempt = await create_attempt(db, item.tenant_id, item.id)
        await db.commit()
        await self.locks.increment_session_count(item.tenant_id)

        job = AutoPurchaseJob(
            attempt_id=attempt.id,
            watch_item_id=item.id,
            tenant_id=item.tenant_id,
            retailer=item.retailer,
            product_url=item.product_url,
            quantity=item.quantity,
            price_ceiling=item.price_ceiling,
            display_name=item.display_name,
            purchase_lock_token=token,
        )
        try:
            published = await self.dispatcher.dispatch_purchase(job)
        except Exception as e:
            logger.error(f"Could not enqueue purchase for item {item.id}: {e}")
            summary.errors += 1
            await transition(db, attempt, AttemptStatus.FAILED, reason=f"enqueue failed: {e}"[:500])
            await db.commit()
            await self.locks.release(lock_key, token)
            return None

        if published.duplicate:
            await transition(db, attempt, AttemptStatus.CANCELLED, reason="duplicate dispatch in window")
            await db.commit()
            await self.locks.release(lock_key, token)
            summary.skipped += 1
            return None

        self._log_activity(
            db,
            item,
            ActivityEventType.PURCHASE_TRIGGERED,
            {"attempt_id": attempt.id, "message_id": published.message_id, "price": snapshot.to_dict()["price"]},
        )
        await db.commit()
        summary.triggered += 1
        logger.info(f"Triggered purchase attempt {attempt.id} for item {item.id} ({published.message_id})")
        return attempt.id


task_runner = CycleRunner()
