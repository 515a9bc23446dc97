"""Hand purchase execution to the out-of-process worker."""

import logging
import time
from typing import Optional

from stocksniper.config import settings
from stocksniper.dispatch.jobs import AutoPurchaseJob, StockCheckJob
from stocksniper.dispatch.queue import PublishResult, RedisJobQueue

logger = logging.getLogger(__name__)


def purchase_dedup_key(item_id: int, now: Optional[float] = None, window_seconds: Optional[int] = None) -> str:
    """Dedup key bucketed to a short window, so one detection yields one job."""
    window = window_seconds or settings.dispatch_dedup_window_seconds
    ts = time.time() if now is None else now
    return f"autobuy:{item_id}:{int(ts // window)}"


class Dispatcher:
    """Publishes typed jobs with deterministic dedup keys."""

    def __init__(self, queue: Optional[RedisJobQueue] = None):
        self.queue = queue or RedisJobQueue()

    async def dispatch_purchase(self, job: AutoPurchaseJob, now: Optional[float] = None) -> PublishResult:
        key = purchase_dedup_key(job.watch_item_id, now=now)
        result = await self.queue.publish(
            job,
            dedup_key=key,
            dedup_ttl_seconds=settings.dispatch_dedup_window_seconds * 2,
        )
        if result.duplicate:
            logger.info(f"Purchase for item {job.watch_item_id} already dispatched ({result.message_id})")
        return result

    async def dispatch_stock_check(self, job: StockCheckJob) -> PublishResult:
        return await self.queue.publish(job, dedup_key=f"stock_check:{job.watch_item_id}", dedup_ttl_seconds=30)

    async def close(self):
        await self.queue.close()
