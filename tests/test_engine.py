"""Tests for playbook-first execution with agent fallback."""

from decimal import Decimal

import pytest

from factories import TARGET_URL
from fakes import FakeBrowserFactory, checkout_page, checkout_vision
from stocksniper.autobuy.base import PurchaseContext
from stocksniper.autobuy.engine import UNCONFIRMED_REASON, AutomationEngine
from stocksniper.autobuy.playbook_store import PlaybookStore
from stocksniper.db.models import Playbook
from stocksniper.retailers import get_adapter
from stocksniper.vault import Credentials

ADAPTER = get_adapter("target")


async def no_sleep(_seconds):
    return None


def make_context(retailer="target") -> PurchaseContext:
    return PurchaseContext(
        attempt_id=11,
        watch_item_id=5,
        tenant_id=2,
        retailer=retailer,
        product_url=TARGET_URL,
        credentials=Credentials(username="shopper@example.com", password="hunter2",
                                verification_code="123", retailer=retailer),
        price_ceiling=Decimal("50.00"),
    )


@pytest.fixture
def store(session_factory):
    return PlaybookStore(session_factory=session_factory)


def make_engine(page, vision, store) -> AutomationEngine:
    return AutomationEngine(
        browser_factory=FakeBrowserFactory(page),
        vision=vision,
        playbook_store=store,
        sleep=no_sleep,
    )


@pytest.mark.asyncio
async def test_agent_success_records_first_playbook(store):
    vision = checkout_vision()
    engine = make_engine(checkout_page(ADAPTER), vision, store)

    result = await engine.execute(make_context())

    assert result.status == "success"
    assert result.path == "agent"
    playbook = await store.get_active("target")
    assert playbook.version == 1
    assert playbook.steps[0] == {"action": "navigate", "url": "{product_url}"}


@pytest.mark.asyncio
async def test_active_playbook_runs_without_vision(store):
    await store.save("target", ADAPTER.standard_playbook())
    vision = checkout_vision()
    engine = make_engine(checkout_page(ADAPTER), vision, store)
    statuses = []

    async def progress(status, note):
        statuses.append(status)

    result = await engine.execute(make_context(), progress)

    assert result.status == "success"
    assert result.path == "playbook"
    assert result.order_ref == "902001234567"
    assert statuses == ["checkout_payment"]
    assert vision.prompts == []
    assert (await store.get_active("target")).success_count == 2


@pytest.mark.asyncio
async def test_broken_playbook_falls_back_to_agent(store, session_factory):
    stale = await store.save("target", [
        {"action": "navigate", "url": "{product_url}"},
        {"action": "click", "selector": "#retired-add-to-cart-button", "timeout_ms": 500},
    ])
    engine = make_engine(checkout_page(ADAPTER), checkout_vision(), store)

    result = await engine.execute(make_context())

    assert result.status == "success"
    assert result.path == "agent"

    async with session_factory() as db:
        old = await db.get(Playbook, stale.id)
    assert old.fail_count == 1
    assert old.active is False
    assert (await store.get_active("target")).version == 2


@pytest.mark.asyncio
async def test_failed_agent_run_saves_nothing(store):
    vision = checkout_vision(**{"product page": [{"in_stock": False, "add_to_cart_visible": False}]})
    engine = make_engine(checkout_page(ADAPTER), vision, store)

    result = await engine.execute(make_context())

    assert result.status == "failed"
    assert result.failure_reason == "Item is out of stock"
    assert await store.get_active("target") is None


@pytest.mark.asyncio
async def test_unsupported_retailer_fails_without_browser(store):
    factory = FakeBrowserFactory(checkout_page(ADAPTER))
    engine = AutomationEngine(browser_factory=factory, vision=checkout_vision(), playbook_store=store)

    result = await engine.execute(make_context(retailer="bestbuy"))

    assert result.status == "failed"
    assert factory.sessions == 0


class FlakyStore(PlaybookStore):
    """Playbook store whose writes fail after the order is already placed."""

    def __init__(self, session_factory, fail_save=False, fail_success=False):
        super().__init__(session_factory=session_factory)
        self.fail_save = fail_save
        self.fail_success = fail_success

    async def save(self, retailer, steps, max_attempts=3):
        if self.fail_save:
            raise RuntimeError("db connection reset")
        return await super().save(retailer, steps, max_attempts)

    async def record_success(self, playbook_id):
        if self.fail_success:
            raise RuntimeError("db connection reset")
        await super().record_success(playbook_id)


@pytest.mark.asyncio
async def test_playbook_save_error_keeps_agent_success(session_factory):
    store = FlakyStore(session_factory, fail_save=True)
    engine = make_engine(checkout_page(ADAPTER), checkout_vision(), store)

    result = await engine.execute(make_context())

    assert result.status == "success"
    assert result.path == "agent"
    assert result.order_ref == "902001234567"


@pytest.mark.asyncio
async def test_success_count_error_keeps_playbook_success(session_factory):
    store = FlakyStore(session_factory)
    await store.save("target", ADAPTER.standard_playbook())
    store.fail_success = True
    engine = make_engine(checkout_page(ADAPTER), checkout_vision(), store)

    result = await engine.execute(make_context())

    assert result.status == "success"
    assert result.path == "playbook"


@pytest.mark.asyncio
async def test_unconfirmed_replay_is_carted_not_retried(store, session_factory):
    playbook = await store.save("target", ADAPTER.standard_playbook())
    page = checkout_page(ADAPTER, confirm=False)
    vision = checkout_vision()
    engine = make_engine(page, vision, store)

    result = await engine.execute(make_context())

    assert result.status == "carted"
    assert result.failure_reason == UNCONFIRMED_REASON
    assert result.path == "playbook"
    assert vision.prompts == []
    assert page.clicks.count('button:has-text("Place your order")') == 1
    assert len([c for c in page.clicks if c in ADAPTER.add_to_cart_selectors]) == 1
    async with session_factory() as db:
        assert (await db.get(Playbook, playbook.id)).fail_count == 1


@pytest.mark.asyncio
async def test_playbook_price_above_ceiling_fails_before_cart(store, session_factory):
    playbook = await store.save("target", ADAPTER.standard_playbook())
    page = checkout_page(ADAPTER)
    page.text = "Booster Bundle $999.99"
    vision = checkout_vision()
    engine = make_engine(page, vision, store)

    result = await engine.execute(make_context())

    assert result.status == "failed"
    assert result.failure_reason == "Price $999.99 exceeds ceiling $50.00"
    assert result.path == "playbook"
    assert page.clicks == []
    assert vision.prompts == []
    async with session_factory() as db:
        stored = await db.get(Playbook, playbook.id)
    assert stored.fail_count == 0
    assert stored.active is True


@pytest.mark.asyncio
async def test_playbook_total_above_ceiling_leaves_item_carted(store):
    await store.save("target", ADAPTER.standard_playbook())
    page = checkout_page(ADAPTER)

    def reach_checkout(p):
        p.url = "https://www.target.com/checkout"
        p.text = "Subtotal $24.99 Estimated tax $2.15 Order total $129.99"

    page.on_click[ADAPTER.checkout_selectors[0]] = reach_checkout
    engine = make_engine(page, checkout_vision(), store)

    result = await engine.execute(make_context())

    assert result.status == "carted"
    assert result.failure_reason == "Ceiling exceeded after cart: total $129.99 > $50.00"
    assert 'button:has-text("Place your order")' not in page.clicks
