"""Tests for the operator cycle endpoints."""

import httpx
import pytest
from fastapi import FastAPI

from factories import make_item, make_tenant
from stocksniper.api.deps import get_database
from stocksniper.api.routes import cycles
from stocksniper.config import settings
from stocksniper.dispatch.dispatcher import Dispatcher
from stocksniper.dispatch.queue import RedisJobQueue
from stocksniper.notify.webhook import NotificationSink
from stocksniper.worker.locks import CYCLE_LOCK_KEY
from stocksniper.worker.tasks import CycleRunner

HEADERS = {"X-Admin-API-Key": "admin-secret"}


class IdleResolver:
    async def resolve(self, locator):
        raise AssertionError("no items should be due")

    async def close(self):
        pass


@pytest.fixture
def runner(session_factory, locks, redis_client):
    return CycleRunner(
        session_factory=session_factory,
        resolver=IdleResolver(),
        locks=locks,
        dispatcher=Dispatcher(RedisJobQueue(client=redis_client)),
        notification_sink=NotificationSink(url=""),
    )


@pytest.fixture
async def client(runner, monkeypatch, session_factory):
    monkeypatch.setattr(settings, "admin_api_key", "admin-secret")
    monkeypatch.setattr(cycles, "task_runner", runner)
    app = FastAPI()
    app.include_router(cycles.router)

    async def override_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = override_database
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://core") as c:
        yield c


@pytest.mark.asyncio
async def test_unconfigured_admin_key_disables_endpoints(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "")

    response = await client.post("/api/cycles/run", headers=HEADERS)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_manual_run_returns_summary(client):
    response = await client.post("/api/cycles/run", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["trigger"] == "manual"
    assert body["status"] == "completed"
    assert body["due"] == 0


@pytest.mark.asyncio
async def test_manual_run_while_locked_is_skipped(client, locks):
    await locks.acquire(CYCLE_LOCK_KEY, ttl_seconds=60, owner="scheduler")

    response = await client.post("/api/cycles/run", headers=HEADERS)

    assert response.json()["status"] == "skipped"


@pytest.mark.asyncio
async def test_lock_status(client, locks):
    assert (await client.get("/api/cycles/lock", headers=HEADERS)).json()["held"] is False

    await locks.acquire(CYCLE_LOCK_KEY, ttl_seconds=60, owner="scheduler")
    body = (await client.get("/api/cycles/lock", headers=HEADERS)).json()

    assert body["held"] is True
    assert body["owner"] == "scheduler"


@pytest.mark.asyncio
async def test_item_check_is_queued_once(client, session_factory, redis_client):
    tenant = await make_tenant(session_factory)
    item = await make_item(session_factory, tenant.id)

    first = await client.post(f"/api/cycles/items/{item.id}/check", headers=HEADERS)
    second = await client.post(f"/api/cycles/items/{item.id}/check", headers=HEADERS)

    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True
    assert await redis_client.xlen("queue:purchase") == 1


@pytest.mark.asyncio
async def test_item_check_for_unknown_item(client):
    response = await client.post("/api/cycles/items/999/check", headers=HEADERS)
    assert response.status_code == 404
