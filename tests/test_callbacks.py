"""Tests for the worker status callback endpoint."""

import json

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy import select

from factories import make_item, make_tenant
from stocksniper.api.deps import get_database
from stocksniper.api.routes import callbacks
from stocksniper.autobuy.attempts import create_attempt, transition
from stocksniper.config import settings
from stocksniper.db.models import ActivityLog, AttemptStatus, PurchaseAttempt, WatchItem
from stocksniper.notify.webhook import NotificationSink

HEADERS = {"X-Worker-API-Key": "worker-secret"}


@pytest.fixture
def webhook_events(monkeypatch):
    events = []

    def receive(request: httpx.Request) -> httpx.Response:
        events.append(json.loads(request.content))
        return httpx.Response(204)

    sink = NotificationSink(
        url="https://hooks.example.com/stock",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(receive)),
    )
    monkeypatch.setattr(callbacks, "notifier", sink)
    return events


@pytest.fixture
async def client(session_factory, monkeypatch, webhook_events):
    monkeypatch.setattr(settings, "worker_api_key", "worker-secret")
    app = FastAPI()
    app.include_router(callbacks.router)

    async def override_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = override_database
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://core") as c:
        yield c


@pytest.fixture
async def attempt(session_factory):
    tenant = await make_tenant(session_factory)
    item = await make_item(session_factory, tenant.id)
    async with session_factory() as db:
        created = await create_attempt(db, tenant.id, item.id)
        await db.commit()
    return created


def report(attempt, **result):
    return {
        "attempt_id": attempt.id,
        "watch_item_id": attempt.watch_item_id,
        "tenant_id": attempt.tenant_id,
        "result": result,
    }


async def stored_attempt(session_factory, attempt_id):
    async with session_factory() as db:
        return await db.get(PurchaseAttempt, attempt_id)


async def activity_types(session_factory, item_id):
    async with session_factory() as db:
        result = await db.execute(
            select(ActivityLog.event_type).where(ActivityLog.watch_item_id == item_id).order_by(ActivityLog.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_wrong_worker_key_is_forbidden(client, attempt):
    response = await client.post(
        "/api/callbacks/purchase",
        json=report(attempt, status="carted"),
        headers={"X-Worker-API-Key": "guess"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_success_report_completes_attempt_and_retires_item(client, attempt, session_factory, webhook_events):
    carted = await client.post("/api/callbacks/purchase", json=report(attempt, status="carted", note="added to cart"),
                               headers=HEADERS)
    assert carted.json()["attempt_status"] == "carted"

    response = await client.post(
        "/api/callbacks/purchase",
        json=report(attempt, status="success", order_ref="902001234567", total_price="27.14", path="agent"),
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {"status": "applied", "attempt_id": attempt.id, "attempt_status": "success"}

    stored = await stored_attempt(session_factory, attempt.id)
    assert stored.order_ref == "902001234567"
    assert stored.path == "agent"
    async with session_factory() as db:
        item = await db.get(WatchItem, attempt.watch_item_id)
    assert item.active is False

    assert await activity_types(session_factory, attempt.watch_item_id) == [
        "cart_add", "checkout_complete", "notification_sent",
    ]
    assert [e["event"] for e in webhook_events] == ["purchase_success"]
    assert webhook_events[0]["data"]["total_price"] == 27.14


@pytest.mark.asyncio
async def test_report_for_terminal_attempt_is_ignored(client, attempt, session_factory):
    async with session_factory() as db:
        row = await db.get(PurchaseAttempt, attempt.id)
        await transition(db, row, AttemptStatus.FAILED, reason="Item is out of stock")
        await db.commit()

    response = await client.post("/api/callbacks/purchase", json=report(attempt, status="success"), headers=HEADERS)

    assert response.json()["status"] == "ignored"
    assert (await stored_attempt(session_factory, attempt.id)).status == "failed"


@pytest.mark.asyncio
async def test_backwards_move_is_rejected(client, attempt):
    for status in ("carted", "checkout_payment"):
        await client.post("/api/callbacks/purchase", json=report(attempt, status=status), headers=HEADERS)

    response = await client.post("/api/callbacks/purchase", json=report(attempt, status="carted"), headers=HEADERS)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_unknown_status_is_unprocessable(client, attempt):
    response = await client.post("/api/callbacks/purchase", json=report(attempt, status="shipped"), headers=HEADERS)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_attempt_of_another_tenant_is_not_found(client, attempt):
    payload = report(attempt, status="carted")
    payload["tenant_id"] = attempt.tenant_id + 100

    response = await client.post("/api/callbacks/purchase", json=payload, headers=HEADERS)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_carted_for_review_after_progress_is_applied(client, attempt, session_factory, webhook_events):
    await client.post("/api/callbacks/purchase", json=report(attempt, status="carted", note="added to cart"),
                      headers=HEADERS)
    duplicate = await client.post("/api/callbacks/purchase", json=report(attempt, status="carted"), headers=HEADERS)
    assert duplicate.json()["status"] == "ignored"

    response = await client.post(
        "/api/callbacks/purchase",
        json=report(attempt, status="carted", failure_reason="Ceiling exceeded after cart: total $120.00 > $50.00"),
        headers=HEADERS,
    )

    assert response.json()["status"] == "applied"
    stored = await stored_attempt(session_factory, attempt.id)
    assert stored.status == "carted"
    assert stored.failure_reason.startswith("Ceiling exceeded after cart")
    assert [e["event"] for e in webhook_events] == ["purchase_carted"]
