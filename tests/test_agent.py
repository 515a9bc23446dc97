"""Tests for the vision-guided checkout agent."""

from dataclasses import replace
from decimal import Decimal

import pytest

from factories import TARGET_URL
from fakes import checkout_page, checkout_vision
from stocksniper.autobuy.agent import CheckoutAgent
from stocksniper.autobuy.base import PurchaseContext
from stocksniper.retailers import get_adapter
from stocksniper.vault import Credentials

ADAPTER = get_adapter("target")


async def no_sleep(_seconds):
    return None


def make_context(**overrides) -> PurchaseContext:
    fields = dict(
        attempt_id=1,
        watch_item_id=1,
        tenant_id=1,
        retailer="target",
        product_url=TARGET_URL,
        credentials=Credentials(username="shopper@example.com", password="hunter2",
                                verification_code="123", retailer="target"),
        price_ceiling=Decimal("50.00"),
    )
    fields.update(overrides)
    return PurchaseContext(**fields)


class ProgressLog:
    def __init__(self):
        self.statuses: list[str] = []

    async def __call__(self, status, note):
        self.statuses.append(status)


@pytest.mark.asyncio
async def test_happy_path_confirms_order_and_reports_progress():
    page = checkout_page(ADAPTER)
    progress = ProgressLog()

    result = await CheckoutAgent(checkout_vision(), sleep=no_sleep).run(page, make_context(), ADAPTER, progress)

    assert result.status == "success"
    assert result.path == "agent"
    assert result.order_ref == "902001234567"
    assert result.total_price == Decimal("27.14")
    assert progress.statuses == ["carted", "checkout_started", "checkout_payment"]
    assert page.fills == []


@pytest.mark.asyncio
async def test_price_above_ceiling_before_cart_fails_without_carting():
    page = checkout_page(ADAPTER)
    vision = checkout_vision(**{"product page": [{"in_stock": True, "add_to_cart_visible": True, "price": "75.00"}]})

    result = await CheckoutAgent(vision, sleep=no_sleep).run(page, make_context(), ADAPTER)

    assert result.status == "failed"
    assert "exceeds ceiling" in result.failure_reason
    assert page.clicks == []


@pytest.mark.asyncio
async def test_total_above_ceiling_after_cart_leaves_item_carted():
    page = checkout_page(ADAPTER)
    vision = checkout_vision(**{"checkout page": [{"current_step": "review", "total_price": "$120.00"}]})

    result = await CheckoutAgent(vision, sleep=no_sleep).run(page, make_context(), ADAPTER)

    assert result.status == "carted"
    assert result.failure_reason.startswith("Ceiling exceeded after cart")
    assert result.total_price == Decimal("120.00")
    assert 'button:has-text("Place your order")' not in page.clicks


@pytest.mark.asyncio
async def test_missing_card_code_fails():
    page = checkout_page(ADAPTER)
    vision = checkout_vision(**{"checkout page": [{"current_step": "payment", "needs_cvv": True}]})
    ctx = make_context()
    ctx = replace(ctx, credentials=replace(ctx.credentials, verification_code=None))

    result = await CheckoutAgent(vision, sleep=no_sleep).run(page, ctx, ADAPTER)

    assert result.status == "failed"
    assert result.failure_reason == "Card verification code required but not supplied"


@pytest.mark.asyncio
async def test_two_factor_prompt_at_login_fails():
    vision = checkout_vision(**{"login page": [{"needs_verification": True}]})

    result = await CheckoutAgent(vision, sleep=no_sleep).run(checkout_page(ADAPTER), make_context(), ADAPTER)

    assert result.status == "failed"
    assert result.failure_reason.startswith("2FA required")


@pytest.mark.asyncio
async def test_step_budget_bounds_a_stuck_checkout():
    page = checkout_page(ADAPTER, confirm=False)
    vision = checkout_vision(**{
        "checkout page": [{"current_step": "shipping", "primary_button_text": "Change shipping address"}],
    })

    result = await CheckoutAgent(vision, step_budget=10, sleep=no_sleep).run(page, make_context(), ADAPTER)

    assert result.status == "failed"
    assert result.failure_reason == "Step budget of 10 exhausted"
    assert not any("Change shipping address" in click for click in page.clicks)
