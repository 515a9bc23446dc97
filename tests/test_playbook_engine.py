"""Tests for deterministic playbook replay."""

from decimal import Decimal

import pytest

from fakes import FakePage
from stocksniper.autobuy.actions import parse_steps, substitute
from stocksniper.autobuy.playbook_engine import PlaybookEngine, check_confirmation
from stocksniper.retailers import get_adapter

ADAPTER = get_adapter("target")
CONFIRMATION_TEXT = "Thanks for your order! Order number: 902001234567. Order total $27.14"


async def no_sleep(_seconds):
    return None


@pytest.fixture
def engine():
    return PlaybookEngine(sleep=no_sleep)


def test_substitute_leaves_unknown_placeholders():
    assert substitute("{product_url}?q={quantity}", {"product_url": "u"}) == "u?q={quantity}"


@pytest.mark.asyncio
async def test_failure_reports_step_number_and_completed_steps(engine):
    steps = [
        {"action": "navigate", "url": "{product_url}"},
        {"action": "wait", "ms": 10},
        {"action": "click", "selector": "#add-to-cart", "timeout_ms": 500},
        {"action": "navigate", "url": "https://www.target.com/cart"},
        {"action": "click", "selector": "#checkout"},
    ]
    page = FakePage(visible={"#checkout"})

    result = await engine.replay(page, steps, {"product_url": "https://www.target.com/p/-/A-1"}, ADAPTER)

    assert result.success is False
    assert result.failed_at == 3
    assert len(result.steps_completed) == 2
    assert page.visits == ["https://www.target.com/p/-/A-1"]
    assert page.clicks == []


@pytest.mark.asyncio
async def test_full_replay_confirms_order(engine):
    page = FakePage(visible={"#add", "#checkout", "#place"})
    page.on_click["#place"] = lambda p: (setattr(p, "url", "https://www.target.com/order-confirmation"),
                                         setattr(p, "text", CONFIRMATION_TEXT))
    steps = parse_steps([
        {"action": "navigate", "url": "{product_url}"},
        {"action": "click", "selector": "#missing", "fallback_selectors": ["#add"]},
        {"action": "click", "selector": "#upsell", "optional": True, "timeout_ms": 500},
        {"action": "click", "selector": "#checkout"},
        {"action": "click", "selector": "#place"},
    ])

    result = await engine.replay(page, steps, {"product_url": "https://www.target.com/p/-/A-1"}, ADAPTER)

    assert result.success is True
    assert result.order_ref == "902001234567"
    assert result.total_price == Decimal("27.14")
    assert page.clicks == ["#add", "#checkout", "#place"]
    assert "skipped optional click #upsell" in result.steps_completed


@pytest.mark.asyncio
async def test_out_of_stock_text_aborts(engine):
    page = FakePage(text="Sorry, this item is temporarily out of stock")
    steps = [
        {"action": "navigate", "url": "{product_url}"},
        {"action": "assert_text", "pattern": "out of stock|sold out", "message": "Product is out of stock"},
    ]

    result = await engine.replay(page, steps, {"product_url": "https://www.target.com/p/-/A-1"}, ADAPTER)

    assert result.failed_at == 2
    assert result.error == "Product is out of stock"


@pytest.mark.asyncio
async def test_fill_without_value_is_skipped(engine):
    page = FakePage(visible={"#cvv"})
    steps = [{"action": "fill", "selector": "#cvv", "value": "{cvv}"}]

    result = await engine.replay(page, steps, {"cvv": ""}, ADAPTER)

    assert page.fills == []
    assert result.steps_completed == ["skipped fill #cvv (no value)"]


@pytest.mark.asyncio
async def test_replay_without_confirmation_fails_after_last_step(engine):
    page = FakePage(visible={"#place"}, url="https://www.target.com/checkout")
    steps = [{"action": "click", "selector": "#place"}]

    result = await engine.replay(page, steps, {}, ADAPTER)

    assert result.success is False
    assert result.failed_at == 2
    assert result.steps_completed == ["click #place"]
    assert result.committed is True


@pytest.mark.asyncio
async def test_standard_playbook_is_valid_and_replays_on_happy_path(engine):
    steps = parse_steps(ADAPTER.standard_playbook())
    selectors = {
        ADAPTER.add_to_cart_selectors[1],
        ADAPTER.checkout_selectors[0],
        'button[data-test="placeOrderButton"]',
    }
    page = FakePage(visible=selectors)
    page.on_click[ADAPTER.checkout_selectors[0]] = lambda p: setattr(p, "url", "https://www.target.com/checkout")
    page.on_click['button[data-test="placeOrderButton"]'] = lambda p: (
        setattr(p, "url", "https://www.target.com/order-confirmation"),
        setattr(p, "text", CONFIRMATION_TEXT),
    )

    result = await engine.replay(page, steps, {"product_url": "https://www.target.com/p/-/A-1", "cvv": "123"}, ADAPTER)

    assert result.success is True, result.error


@pytest.mark.asyncio
async def test_check_confirmation_requires_signal():
    confirmed, order_ref, total = await check_confirmation(FakePage(text="Review your order"), ADAPTER)
    assert (confirmed, order_ref, total) == (False, None, None)


@pytest.mark.asyncio
async def test_failure_after_order_click_is_marked_committed(engine):
    page = FakePage(visible={"#place"})
    steps = [
        {"action": "click", "selector": "#place", "commits_order": True},
        {"action": "click", "selector": "#confirm-cvv", "timeout_ms": 500},
    ]

    result = await engine.replay(page, steps, {}, ADAPTER)

    assert result.failed_at == 2
    assert result.committed is True
    assert result.outcome is None


@pytest.mark.asyncio
async def test_failure_before_order_click_is_not_committed(engine):
    page = FakePage(visible=set())
    steps = [
        {"action": "click", "selector": "#checkout", "timeout_ms": 500},
        {"action": "click", "selector": "#place", "commits_order": True},
    ]

    result = await engine.replay(page, steps, {}, ADAPTER)

    assert result.failed_at == 1
    assert result.committed is False


@pytest.mark.asyncio
async def test_checkout_total_ceiling_scales_with_quantity(engine):
    page = FakePage(text="Subtotal $49.98 Order total $53.48")
    steps = [{"action": "assert_price", "stage": "checkout", "limit": "{ceiling}", "quantity": "{quantity}"}]

    within = await engine.replay(page, steps, {"ceiling": "30.00", "quantity": "2"}, ADAPTER)
    over = await engine.replay(page, steps, {"ceiling": "25.00", "quantity": "2"}, ADAPTER)

    assert within.steps_completed == ["total $53.48 within ceiling"]
    assert over.failed_at == 1
    assert over.outcome == "carted"
    assert over.error == "Ceiling exceeded after cart: total $53.48 > $50.00"


@pytest.mark.asyncio
async def test_price_gate_passes_without_ceiling_or_price(engine):
    steps = [{"action": "assert_price", "stage": "product"}]

    no_ceiling = await engine.replay(FakePage(text="$999.99"), steps, {"ceiling": ""}, ADAPTER)
    no_price = await engine.replay(FakePage(text="Add to cart"), steps, {"ceiling": "50.00"}, ADAPTER)

    assert no_ceiling.steps_completed == ["price check skipped (no ceiling)"]
    assert no_price.steps_completed == ["price check skipped (product price not shown)"]
