"""Automation engine: playbook replay first, vision agent as fallback."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from stocksniper.autobuy.agent import CheckoutAgent
from stocksniper.autobuy.base import PATH_AGENT, PATH_PLAYBOOK, ProgressCallback, PurchaseContext, PurchaseResult
from stocksniper.autobuy.browser import BrowserFactory
from stocksniper.autobuy.playbook_engine import PlaybookEngine
from stocksniper.autobuy.playbook_store import PlaybookStore
from stocksniper.autobuy.vision import VisionClient
from stocksniper.db.models import AttemptStatus
from stocksniper.metrics import record_playbook_replay, record_purchase
from stocksniper.retailers import get_adapter

logger = logging.getLogger(__name__)

UNCONFIRMED_REASON = "Playbook completed but order not confirmed"


class AutomationEngine:
    """
    Executes one purchase in an isolated browser session.

    1. Replay the retailer's active playbook when one exists.
    2. On a replay failure before the order step, record it and continue
       with the vision agent in the same session. A failure at or after the
       order step leaves the attempt carted for review instead.
    3. A successful agent run stores the retailer's standard step sequence
       as the next playbook version.

    Playbook bookkeeping errors are logged and never change the result.
    """

    def __init__(
        self,
        browser_factory: Optional[BrowserFactory] = None,
        vision: Optional[VisionClient] = None,
        playbook_store: Optional[PlaybookStore] = None,
        playbook_engine: Optional[PlaybookEngine] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.browser_factory = browser_factory or BrowserFactory()
        self.vision = vision or VisionClient()
        self.playbook_store = playbook_store or PlaybookStore()
        self.playbook_engine = playbook_engine or PlaybookEngine(sleep=sleep)
        self._sleep = sleep

    async def execute(self, ctx: PurchaseContext, progress: Optional[ProgressCallback] = None) -> PurchaseResult:
        adapter = get_adapter(ctx.retailer)
        if adapter is None:
            return PurchaseResult(
                status=AttemptStatus.FAILED.value,
                failure_reason=f"Unsupported retailer: {ctx.retailer}",
            )

        start = time.time()
        async with self.browser_factory.session() as page:
            result = await self._try_playbook(page, ctx, adapter, progress)
            if result is None:
                agent = CheckoutAgent(self.vision, sleep=self._sleep)
                result = await agent.run(page, ctx, adapter, progress)
                if result.status == AttemptStatus.SUCCESS.value:
                    await self._bookkeep("save", self.playbook_store.save(adapter.name, adapter.standard_playbook()))

        duration = time.time() - start
        record_purchase(ctx.retailer, result.status, result.path or PATH_AGENT, duration)
        logger.info(
            f"Attempt {ctx.attempt_id} finished: {result.status} via {result.path} "
            f"in {duration:.1f}s"
        )
        return result

    async def _bookkeep(self, label: str, call: Awaitable[Any], default: Any = None) -> Any:
        try:
            return await call
        except Exception as e:
            logger.error(f"Playbook {label} failed, purchase result kept: {e}", exc_info=True)
            return default

    async def _try_playbook(self, page, ctx: PurchaseContext, adapter, progress) -> Optional[PurchaseResult]:
        """Replay the active playbook; None means fall back to the agent."""
        playbook = await self._bookkeep("lookup", self.playbook_store.get_active(adapter.name))
        if playbook is None:
            logger.info(f"No active playbook for {adapter.name}, using agent")
            return None

        logger.info(f"Replaying playbook v{playbook.version} for {adapter.name} ({len(playbook.steps)} steps)")
        replay = await self.playbook_engine.replay(page, playbook.steps, ctx.playbook_variables(), adapter)
        record_playbook_replay(adapter.name, replay.success)

        if replay.success:
            await self._bookkeep("success count", self.playbook_store.record_success(playbook.id))
            if progress:
                await progress(AttemptStatus.CHECKOUT_PAYMENT.value, f"playbook v{playbook.version} completed")
            return PurchaseResult(
                status=AttemptStatus.SUCCESS.value,
                order_ref=replay.order_ref or "unknown",
                total_price=replay.total_price,
                steps_completed=replay.steps_completed,
                path=PATH_PLAYBOOK,
            )

        if replay.outcome:
            # Price gate or interrupted order click: the playbook itself worked
            logger.warning(f"Playbook v{playbook.version} stopped at step {replay.failed_at}: {replay.error}")
            return PurchaseResult(
                status=replay.outcome,
                failure_reason=replay.error,
                steps_completed=replay.steps_completed,
                path=PATH_PLAYBOOK,
            )

        deactivated = await self._bookkeep("failure count", self.playbook_store.record_failure(playbook.id), False)
        logger.warning(
            f"Playbook v{playbook.version} failed at step {replay.failed_at}: {replay.error}"
            + (" (deactivated)" if deactivated else "")
        )

        if replay.committed:
            # The order step already ran; a second checkout could buy twice
            return PurchaseResult(
                status=AttemptStatus.CARTED.value,
                failure_reason=UNCONFIRMED_REASON,
                steps_completed=replay.steps_completed,
                path=PATH_PLAYBOOK,
            )
        return None
