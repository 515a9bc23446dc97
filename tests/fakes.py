"""Scriptable stand-ins for a Playwright page and the vision model."""

from contextlib import asynccontextmanager
from typing import Callable, Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class FakePage:
    """
    Minimal async page: a set of visible selectors, body text and a URL.

    ``on_click`` / ``on_goto`` map a selector / URL to a callback that mutates
    the page, so a test can script navigation between checkout screens.
    """

    def __init__(self, visible=(), text: str = "", url: str = "about:blank"):
        self.visible = set(visible)
        self.text = text
        self.url = url
        self.on_click: dict[str, Callable[["FakePage"], None]] = {}
        self.on_goto: dict[str, Callable[["FakePage"], None]] = {}
        self.clicks: list[str] = []
        self.fills: list[tuple[str, str]] = []
        self.visits: list[str] = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.visits.append(url)
        self.url = url
        handler = self.on_goto.get(url)
        if handler:
            handler(self)

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        if selector not in self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def is_visible(self, selector):
        return selector in self.visible

    async def click(self, selector, timeout=None):
        if selector not in self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded clicking {selector}")
        self.clicks.append(selector)
        handler = self.on_click.get(selector)
        if handler:
            handler(self)

    async def fill(self, selector, value, timeout=None):
        if selector not in self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded filling {selector}")
        self.fills.append((selector, value))

    async def inner_text(self, selector, timeout=None):
        return self.text

    async def screenshot(self, type="png", **kwargs):
        return b"\x89PNG fake"


class ScriptedVision:
    """Returns queued replies per prompt kind, chosen by a keyword in the prompt."""

    def __init__(self, replies: Optional[dict[str, list[dict]]] = None, default: Optional[dict] = None):
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.default = default or {}
        self.prompts: list[str] = []

    async def analyze(self, screenshot: bytes, prompt: str) -> dict:
        self.prompts.append(prompt)
        for keyword, queue in self.replies.items():
            if keyword in prompt and queue:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        return dict(self.default)


class FakeBrowserFactory:
    """Hands the same page to every session."""

    def __init__(self, page: FakePage):
        self.page = page
        self.sessions = 0

    @asynccontextmanager
    async def session(self):
        self.sessions += 1
        yield self.page


CONFIRMATION_TEXT = "Thanks for your order! Order number: 902001234567. Order total $27.14"


def checkout_page(adapter, confirm: bool = True) -> FakePage:
    """
    A storefront that walks product page -> cart -> checkout -> confirmation
    through the adapter's own selectors.
    """
    page = FakePage(visible={
        adapter.add_to_cart_selectors[0],
        adapter.add_to_cart_selectors[1],
        adapter.checkout_selectors[0],
        'button[data-test="placeOrderButton"]',
        'button:has-text("Place your order")',
    })
    page.on_click[adapter.checkout_selectors[0]] = lambda p: setattr(p, "url", "https://www.target.com/checkout")

    def place_order(p):
        if confirm:
            p.url = "https://www.target.com/order-confirmation"
            p.text = CONFIRMATION_TEXT

    page.on_click['button[data-test="placeOrderButton"]'] = place_order
    page.on_click['button:has-text("Place your order")'] = place_order
    return page


LOGGED_IN = {"logged_in": True}
IN_STOCK = {"in_stock": True, "add_to_cart_visible": True, "price": "24.99"}
REVIEW_STEP = {"current_step": "review", "total_price": "$27.14", "primary_button_text": "Place your order"}


def checkout_vision(**overrides) -> "ScriptedVision":
    """Vision replies keyed on a phrase unique to each prompt."""
    replies = {
        "login page": [LOGGED_IN],
        "product page": [IN_STOCK],
        "checkout page": [REVIEW_STEP],
    }
    replies.update(overrides)
    return ScriptedVision(replies)
