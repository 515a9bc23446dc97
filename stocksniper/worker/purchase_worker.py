"""Out-of-process purchase worker.

Consumes jobs from the purchase queue, runs the automation engine with
credentials from the vault, and reports every status change back to the core
service over the authenticated callback endpoint.
"""

import asyncio
import logging
import socket
import time
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksniper.autobuy.base import PurchaseContext, PurchaseResult
from stocksniper.autobuy.engine import AutomationEngine
from stocksniper.config import settings
from stocksniper.db.models import AttemptStatus, PurchaseAttempt
from stocksniper.dispatch.jobs import AutoPurchaseJob, JobDecodeError, StockCheckJob, decode_job
from stocksniper.dispatch.queue import QueueMessage, RedisJobQueue
from stocksniper.logging_config import setup_logging
from stocksniper.vault import get_credentials
from stocksniper.worker.locks import LockManager, lock_manager, purchase_lock_key

logger = logging.getLogger(__name__)


class CallbackError(Exception):
    """The core service did not accept a status report."""


class PurchaseWorker:
    """
    Queue consumer for purchase and single-item stock-check jobs.

    A purchase job is only executed while its attempt is still ``detected``,
    so a redelivered message never starts a second checkout. The purchase
    lock taken by the dispatcher is refreshed while the checkout runs and
    released when the job ends, whatever the outcome.
    """

    def __init__(
        self,
        queue: Optional[RedisJobQueue] = None,
        engine: Optional[AutomationEngine] = None,
        locks: Optional[LockManager] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cycle_runner: Any = None,
        consumer_name: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if session_factory is None:
            from stocksniper.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.queue = queue or RedisJobQueue()
        self.engine = engine or AutomationEngine()
        self.locks = locks or lock_manager
        self._session_factory = session_factory
        self._http_client = http_client
        self._cycle_runner = cycle_runner
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{id(self):x}"
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.callback_timeout_seconds)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        await self.queue.close()
        await self.engine.browser_factory.close()

    async def post_callback(self, job: AutoPurchaseJob, result: dict, attempts: int = 3) -> dict:
        """
        Report a status to the core service, retrying transient failures.

        Raises:
            CallbackError: not accepted after ``attempts`` tries
        """
        payload = {
            "attempt_id": job.attempt_id,
            "watch_item_id": job.watch_item_id,
            "tenant_id": job.tenant_id,
            "result": result,
        }
        headers = {"X-Worker-API-Key": settings.worker_api_key}
        client = await self._get_client()

        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                response = await client.post(settings.core_callback_url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                last_error = str(e)
            else:
                if response.status_code == 200:
                    return response.json()
                if response.status_code in (401, 403, 404, 409, 422):
                    # Rejections are final; retrying cannot change the answer
                    raise CallbackError(f"callback rejected with {response.status_code}: {response.text[:200]}")
                last_error = f"HTTP {response.status_code}"

            logger.warning(f"Callback for attempt {job.attempt_id} failed ({attempt}/{attempts}): {last_error}")
            if attempt < attempts:
                await self._sleep(2 ** attempt)

        raise CallbackError(f"callback failed after {attempts} tries: {last_error}")

    async def _attempt_status(self, attempt_id: int) -> Optional[str]:
        async with self._session_factory() as db:
            attempt = await db.get(PurchaseAttempt, attempt_id)
            return attempt.status if attempt else None

    async def _heartbeat(self, job: AutoPurchaseJob):
        """Keep the purchase lock alive for as long as the checkout runs."""
        key = purchase_lock_key(job.watch_item_id)
        while True:
            await asyncio.sleep(settings.purchase_lock_heartbeat_seconds)
            try:
                held = await self.locks.refresh(key, job.purchase_lock_token, settings.purchase_lock_ttl_seconds)
            except Exception as e:
                logger.warning(f"Could not refresh purchase lock for item {job.watch_item_id}: {e}")
                continue
            if not held:
                logger.warning(
                    f"Purchase lock for item {job.watch_item_id} is no longer held by attempt {job.attempt_id}"
                )
                return

    async def run_purchase(self, job: AutoPurchaseJob) -> Optional[PurchaseResult]:
        """
        Execute one purchase job end to end.

        Returns:
            The final result, or None when the job was skipped
        """
        status = await self._attempt_status(job.attempt_id)
        if status != AttemptStatus.DETECTED.value:
            logger.info(f"Attempt {job.attempt_id} is {status}; skipping redelivered job")
            return None

        start = time.time()
        try:
            async with self._session_factory() as db:
                credentials = await get_credentials(db, job.tenant_id, job.retailer)

            if credentials is None:
                result = PurchaseResult(
                    status=AttemptStatus.FAILED.value,
                    failure_reason=f"No usable {job.retailer} credentials",
                )
            else:
                ctx = PurchaseContext(
                    attempt_id=job.attempt_id,
                    watch_item_id=job.watch_item_id,
                    tenant_id=job.tenant_id,
                    retailer=job.retailer,
                    product_url=job.product_url,
                    credentials=credentials,
                    quantity=job.quantity,
                    price_ceiling=job.price_ceiling,
                    display_name=job.display_name,
                )

                async def progress(new_status: str, note: str):
                    try:
                        await self.post_callback(job, {"status": new_status, "note": note})
                    except CallbackError as e:
                        logger.warning(f"Progress report {new_status} for attempt {job.attempt_id} lost: {e}")

                heartbeat = asyncio.create_task(self._heartbeat(job))
                try:
                    result = await self.engine.execute(ctx, progress)
                finally:
                    heartbeat.cancel()
        except Exception as e:
            logger.error(f"Purchase attempt {job.attempt_id} crashed: {e}", exc_info=True)
            result = PurchaseResult(
                status=AttemptStatus.FAILED.value,
                failure_reason=f"Unexpected error: {e}"[:500],
            )
        finally:
            await self.locks.release(purchase_lock_key(job.watch_item_id), job.purchase_lock_token)

        logger.info(
            f"Attempt {job.attempt_id} for item {job.watch_item_id} ended {result.status} "
            f"after {time.time() - start:.1f}s"
        )
        await self.post_callback(job, result.to_dict())
        return result

    async def handle(self, message: QueueMessage):
        """Process one message; acks on success, raises on failure."""
        job = decode_job(message.body)

        if isinstance(job, AutoPurchaseJob):
            try:
                await self.run_purchase(job)
            except CallbackError as e:
                # The purchase already ran: park the job instead of re-running it
                await self.queue.dead_letter(message, f"callback_failed: {e}")
                return
        elif isinstance(job, StockCheckJob):
            if self._cycle_runner is None:
                from stocksniper.worker.tasks import task_runner

                self._cycle_runner = task_runner
            await self._cycle_runner.check_single(job.watch_item_id)

        await self.queue.ack(message.message_id)

    async def process(self, message: QueueMessage):
        try:
            await self.handle(message)
        except JobDecodeError as e:
            await self.queue.dead_letter(message, f"undecodable: {e.reason}")
        except Exception as e:
            logger.error(f"Job {message.message_id} failed: {e}", exc_info=True)
            await self.queue.retry(message, str(e)[:300])

    async def run(self, stop: Optional[asyncio.Event] = None):
        """Consume until ``stop`` is set."""
        stop = stop or asyncio.Event()
        await self.queue.ensure_group()
        logger.info(f"Purchase worker {self.consumer_name} consuming {self.queue.stream}")

        last_reclaim = 0.0
        while not stop.is_set():
            if time.time() - last_reclaim >= settings.purchase_reclaim_idle_ms / 1000:
                last_reclaim = time.time()
                for message in await self.queue.reclaim(self.consumer_name):
                    await self.process(message)

            try:
                messages = await self.queue.read(self.consumer_name, count=1, block_ms=5000)
            except Exception as e:
                logger.error(f"Queue read failed: {e}")
                await self._sleep(5)
                continue
            for message in messages:
                await self.process(message)

        logger.info(f"Purchase worker {self.consumer_name} stopped")


async def _main():
    worker = PurchaseWorker()
    try:
        await worker.run()
    finally:
        await worker.close()


def main():
    setup_logging()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
