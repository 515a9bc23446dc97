"""Tests for the queue-driven purchase worker."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from factories import add_credentials, make_item, make_tenant
from stocksniper.autobuy.attempts import create_attempt, transition
from stocksniper.autobuy.base import PurchaseResult
from stocksniper.config import settings
from stocksniper.db.models import AttemptStatus, PurchaseAttempt
from stocksniper.dispatch.jobs import AutoPurchaseJob
from stocksniper.dispatch.queue import QueueMessage, RedisJobQueue
from stocksniper.worker.locks import purchase_lock_key
from stocksniper.worker.purchase_worker import CallbackError, PurchaseWorker


class FakeEngine:
    def __init__(self, result=None, error=None, progress_statuses=()):
        self.result = result or PurchaseResult(status="success", order_ref="902001234567", path="agent")
        self.error = error
        self.progress_statuses = progress_statuses
        self.contexts = []

    async def execute(self, ctx, progress=None):
        self.contexts.append(ctx)
        for status in self.progress_statuses:
            await progress(status, f"reached {status}")
        if self.error:
            raise self.error
        return self.result


class CoreService:
    """Records callback posts and answers with scripted status codes."""

    def __init__(self, codes=(200,)):
        self.codes = list(codes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self.codes.pop(0) if len(self.codes) > 1 else self.codes[0]
        return httpx.Response(code, json={"status": "applied"})

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture(autouse=True)
def worker_key(monkeypatch):
    monkeypatch.setattr(settings, "worker_api_key", "worker-secret")


@pytest.fixture
def queue(redis_client):
    return RedisJobQueue(client=redis_client)


@pytest.fixture
def make_worker(session_factory, locks, queue):
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    def _make(engine, core):
        worker = PurchaseWorker(
            queue=queue,
            engine=engine,
            locks=locks,
            session_factory=session_factory,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(core)),
            consumer_name="test-worker",
            sleep=record_sleep,
        )
        worker.sleeps = sleeps
        return worker
    return _make


async def detected_job(session_factory, locks, with_credentials=True) -> AutoPurchaseJob:
    tenant = await make_tenant(session_factory)
    item = await make_item(session_factory, tenant.id)
    if with_credentials:
        await add_credentials(session_factory, tenant.id)
    async with session_factory() as db:
        attempt = await create_attempt(db, tenant.id, item.id)
        await db.commit()
    token = await locks.acquire(purchase_lock_key(item.id), ttl_seconds=300, owner="dispatch")
    return AutoPurchaseJob(
        attempt_id=attempt.id,
        watch_item_id=item.id,
        tenant_id=tenant.id,
        retailer="target",
        product_url=item.product_url,
        price_ceiling=Decimal("50.00"),
        purchase_lock_token=token,
    )


@pytest.mark.asyncio
async def test_successful_run_reports_progress_then_result(session_factory, locks, make_worker):
    job = await detected_job(session_factory, locks)
    engine = FakeEngine(progress_statuses=["carted", "checkout_payment"])
    core = CoreService()

    result = await make_worker(engine, core).run_purchase(job)

    assert result.status == "success"
    assert engine.contexts[0].credentials.verification_code == "123"
    assert engine.contexts[0].credentials.username == "shopper@example.com"
    assert [p["result"]["status"] for p in core.payloads] == ["carted", "checkout_payment", "success"]
    assert core.payloads[0]["result"]["note"] == "reached carted"
    assert core.payloads[-1]["result"]["order_ref"] == "902001234567"
    assert all(r.headers["X-Worker-API-Key"] == "worker-secret" for r in core.requests)
    assert await locks.get_lock_info(purchase_lock_key(job.watch_item_id)) is None


@pytest.mark.asyncio
async def test_engine_crash_reports_failure_and_releases_lock(session_factory, locks, make_worker):
    job = await detected_job(session_factory, locks)
    core = CoreService()

    result = await make_worker(FakeEngine(error=RuntimeError("browser died")), core).run_purchase(job)

    assert result.status == "failed"
    assert result.failure_reason == "Unexpected error: browser died"
    assert core.payloads[-1]["result"]["status"] == "failed"
    assert await locks.get_lock_info(purchase_lock_key(job.watch_item_id)) is None


@pytest.mark.asyncio
async def test_missing_credentials_fail_without_browser(session_factory, locks, make_worker):
    job = await detected_job(session_factory, locks, with_credentials=False)
    engine = FakeEngine()
    core = CoreService()

    result = await make_worker(engine, core).run_purchase(job)

    assert result.status == "failed"
    assert "credentials" in result.failure_reason
    assert engine.contexts == []
    assert len(core.requests) == 1


@pytest.mark.asyncio
async def test_redelivered_job_for_started_attempt_is_skipped(session_factory, locks, make_worker):
    job = await detected_job(session_factory, locks)
    async with session_factory() as db:
        attempt = await db.get(PurchaseAttempt, job.attempt_id)
        await transition(db, attempt, AttemptStatus.CARTED, reason="added to cart")
        await db.commit()
    engine = FakeEngine()
    core = CoreService()

    assert await make_worker(engine, core).run_purchase(job) is None
    assert engine.contexts == []
    assert core.requests == []


@pytest.mark.asyncio
async def test_rejected_callback_is_not_retried(session_factory, locks, make_worker):
    job = await detected_job(session_factory, locks)
    core = CoreService(codes=[409])
    worker = make_worker(FakeEngine(), core)

    with pytest.raises(CallbackError):
        await worker.post_callback(job, {"status": "success"})
    assert len(core.requests) == 1


@pytest.mark.asyncio
async def test_transient_callback_failure_is_retried(session_factory, locks, make_worker):
    job = await detected_job(session_factory, locks)
    core = CoreService(codes=[503, 200])
    worker = make_worker(FakeEngine(), core)

    assert await worker.post_callback(job, {"status": "success"}) == {"status": "applied"}
    assert len(core.requests) == 2
    assert worker.sleeps == [2]


@pytest.mark.asyncio
async def test_unreported_result_is_dead_lettered_not_rerun(session_factory, locks, make_worker, queue):
    job = await detected_job(session_factory, locks)
    await queue.publish(job)
    message = (await queue.read("test-worker", block_ms=10))[0]
    engine = FakeEngine()

    await make_worker(engine, CoreService(codes=[500])).process(message)

    assert len(engine.contexts) == 1
    assert await queue.dead_letter_count() == 1
    assert await queue.read("test-worker", block_ms=10) == []


@pytest.mark.asyncio
async def test_undecodable_message_is_dead_lettered(make_worker, queue):
    await queue.ensure_group()

    await make_worker(FakeEngine(), CoreService()).process(QueueMessage(message_id="0-1", body="garbage"))

    assert await queue.dead_letter_count() == 1


class SlowEngine(FakeEngine):
    """Runs long enough for the lock heartbeat to fire and records the lock TTL."""

    def __init__(self, redis_client, key):
        super().__init__()
        self.redis = redis_client
        self.key = key
        self.ttl_seen = None

    async def execute(self, ctx, progress=None):
        await asyncio.sleep(0.1)
        self.ttl_seen = await self.redis.ttl(self.key)
        return await super().execute(ctx, progress)


@pytest.mark.asyncio
async def test_purchase_lock_is_refreshed_while_checkout_runs(
    session_factory, locks, redis_client, make_worker, monkeypatch
):
    monkeypatch.setattr(settings, "purchase_lock_heartbeat_seconds", 0.01)
    monkeypatch.setattr(settings, "purchase_lock_ttl_seconds", 900)
    job = await detected_job(session_factory, locks)
    key = purchase_lock_key(job.watch_item_id)
    engine = SlowEngine(redis_client, key)

    result = await make_worker(engine, CoreService()).run_purchase(job)

    assert result.status == "success"
    assert engine.ttl_seen > 300
    assert await locks.get_lock_info(key) is None
