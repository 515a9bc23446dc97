"""Vision-guided checkout agent (fallback when no playbook works)."""

import asyncio
import logging
import random
import re
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from stocksniper.autobuy.base import PATH_AGENT, ProgressCallback, PurchaseContext, PurchaseResult
from stocksniper.autobuy.playbook_engine import check_confirmation, page_text
from stocksniper.autobuy.vision import VisionClient, VisionError
from stocksniper.config import settings
from stocksniper.db.models import AttemptStatus
from stocksniper.resolve.base import parse_price
from stocksniper.retailers.base import RetailerAdapter

logger = logging.getLogger(__name__)

# Buttons the agent must never press: saved address and payment stay untouched
FORBIDDEN_BUTTON_TEXT = re.compile(
    r"edit|change|add (a )?new|remove|delete|update (address|payment|card)",
    re.IGNORECASE,
)

LOGIN_PROMPT = """Analyze this storefront login page screenshot.
Return JSON:
- "logged_in": boolean, the account is already signed in
- "blocked": boolean, a CAPTCHA, bot check or access-denied message is shown
- "blocked_reason": string or null
- "needs_verification": boolean, a one-time code / 2FA prompt is shown"""

LOGIN_VERIFY_PROMPT = """After a login attempt, analyze this page.
Return JSON:
- "logged_in": boolean
- "error_message": string or null, any error shown
- "needs_verification": boolean, a one-time code / 2FA prompt is shown"""

CHECKOUT_PROMPT = """Analyze this checkout page screenshot.
Return JSON:
- "current_step": one of "cart", "shipping", "payment", "review", "confirmation", "error", "login", "unknown"
- "is_order_confirmed": boolean, an order confirmation / thank-you page is shown
- "order_number": string or null
- "total_price": string or null, the order total if visible
- "error_message": string or null
- "primary_button_text": text on the main button that advances checkout, or null
- "needs_cvv": boolean, a card security code (CVV) input is requested
- "needs_verification": boolean, a one-time code / 2FA prompt is shown
Never suggest editing the shipping address or payment method."""


class AgentStop(Exception):
    """Terminates the agent run with a final status."""

    def __init__(self, status: str, reason: str, order_ref: Optional[str] = None,
                 total_price: Optional[Decimal] = None):
        self.status = status
        self.reason = reason
        self.order_ref = order_ref
        self.total_price = total_price
        super().__init__(reason)


class CheckoutAgent:
    """
    Drives login, product re-check, add-to-cart and checkout from
    screenshots, within a fixed step budget.

    Stop conditions: order confirmation, redirect to login (session
    expired), explicit error text, or a verification/2FA prompt.
    """

    def __init__(
        self,
        vision: VisionClient,
        step_budget: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.vision = vision
        self.step_budget = step_budget or settings.agent_step_budget
        self._sleep = sleep
        self._steps_used = 0
        self._log: list[str] = []

    def _spend(self, label: str):
        self._steps_used += 1
        self._log.append(label)
        logger.info(f"[agent {self._steps_used}/{self.step_budget}] {label}")
        if self._steps_used > self.step_budget:
            raise AgentStop(AttemptStatus.FAILED.value, f"Step budget of {self.step_budget} exhausted")

    async def _settle(self, low: float = 1.0, high: float = 2.5):
        await self._sleep(random.uniform(low, high))

    async def _look(self, page: Any, prompt: str) -> dict:
        self._spend("vision check")
        try:
            screenshot = await page.screenshot(type="png")
            return await self.vision.analyze(screenshot, prompt)
        except VisionError as e:
            logger.warning(f"Vision check failed: {e}")
            return {}

    async def _click_first(self, page: Any, selectors: list[str], timeout_ms: int = 2000) -> Optional[str]:
        for selector in selectors:
            try:
                if await page.is_visible(selector):
                    await page.click(selector, timeout=timeout_ms)
                    return selector
            except (PlaywrightTimeoutError, PlaywrightError) as e:
                logger.debug(f"Click {selector} failed: {e}")
        return None

    async def _fill_first(self, page: Any, selectors: list[str], value: str) -> Optional[str]:
        for selector in selectors:
            try:
                if await page.is_visible(selector):
                    await page.fill(selector, value)
                    return selector
            except PlaywrightError as e:
                logger.debug(f"Fill {selector} failed: {e}")
        return None

    async def _check_stop_conditions(self, page: Any, adapter: RetailerAdapter):
        url = page.url or ""
        if any(marker in url for marker in adapter.login_url_markers):
            raise AgentStop(AttemptStatus.FAILED.value, "Session expired: redirected to login")
        text = (await page_text(page)).lower()
        if any(p in text for p in adapter.verification_text_patterns):
            raise AgentStop(AttemptStatus.FAILED.value, "Verification code required: cannot proceed automatically")

    async def _login(self, page: Any, ctx: PurchaseContext, adapter: RetailerAdapter):
        self._spend(f"open {adapter.login_url}")
        await page.goto(adapter.login_url, wait_until="domcontentloaded",
                        timeout=settings.browser_navigation_timeout_ms)
        await self._settle()

        state = await self._look(page, LOGIN_PROMPT)
        if state.get("blocked"):
            raise AgentStop(AttemptStatus.FAILED.value, f"Blocked: {state.get('blocked_reason') or 'bot check'}")
        if state.get("needs_verification"):
            raise AgentStop(AttemptStatus.FAILED.value, "2FA required: cannot proceed automatically")
        if state.get("logged_in"):
            self._log.append("already logged in")
            return

        self._spend("submit username")
        if await self._fill_first(page, adapter.username_selectors, ctx.credentials.username) is None:
            raise AgentStop(AttemptStatus.FAILED.value, "Login form not found")
        await self._click_first(page, adapter.submit_selectors)
        await self._settle()

        # Two-step forms reveal the password field after the username
        if await self._fill_first(page, adapter.password_selectors, ctx.credentials.password) is not None:
            self._spend("submit password")
            await self._click_first(page, adapter.submit_selectors)
            await self._settle(2.0, 4.0)

        url = page.url or ""
        if any(marker in url for marker in adapter.login_url_markers):
            verify = await self._look(page, LOGIN_VERIFY_PROMPT)
            if verify.get("needs_verification"):
                raise AgentStop(AttemptStatus.FAILED.value, "2FA required: cannot proceed automatically")
            if not verify.get("logged_in"):
                raise AgentStop(
                    AttemptStatus.FAILED.value,
                    verify.get("error_message") or "Login failed: check credentials",
                )
        self._log.append("logged in")

    async def _add_to_cart(self, page: Any, ctx: PurchaseContext, adapter: RetailerAdapter,
                           progress: Optional[ProgressCallback]):
        self._spend("open product page")
        await page.goto(ctx.product_url, wait_until="domcontentloaded",
                        timeout=settings.browser_navigation_timeout_ms)
        await self._settle(2.0, 4.0)

        text = await page_text(page)
        state = await self._look(page, adapter.stock_prompt(text))
        if state.get("blocked"):
            raise AgentStop(AttemptStatus.FAILED.value, "Blocked by bot check on product page")
        if not state.get("in_stock") or not state.get("add_to_cart_visible"):
            raise AgentStop(AttemptStatus.FAILED.value, "Item is out of stock")

        # Pre-cart ceiling gate on the re-confirmed price
        price = parse_price(state.get("price"))
        if ctx.price_ceiling is not None and price is not None and price > ctx.price_ceiling:
            raise AgentStop(AttemptStatus.FAILED.value, f"Price ${price} exceeds ceiling ${ctx.price_ceiling}")

        self._spend("add to cart")
        if await self._click_first(page, adapter.add_to_cart_selectors) is None:
            raise AgentStop(AttemptStatus.FAILED.value, "Add-to-cart button not found")
        await self._settle(2.0, 3.5)
        await self._click_first(page, adapter.overlay_selectors, timeout_ms=1500)

        self._log.append("added to cart")
        if progress:
            await progress(AttemptStatus.CARTED.value, "added to cart")

    async def _checkout(self, page: Any, ctx: PurchaseContext, adapter: RetailerAdapter,
                        progress: Optional[ProgressCallback]) -> PurchaseResult:
        self._spend("open cart")
        await page.goto(adapter.cart_url, wait_until="domcontentloaded",
                        timeout=settings.browser_navigation_timeout_ms)
        await self._settle()

        self._spend("start checkout")
        if await self._click_first(page, adapter.checkout_selectors) is None:
            raise AgentStop(AttemptStatus.CARTED.value, "Item is in cart but checkout could not be started")
        if progress:
            await progress(AttemptStatus.CHECKOUT_STARTED.value, "checkout started")
        await self._settle(2.0, 4.0)

        reported_payment = False
        while True:
            await self._check_stop_conditions(page, adapter)

            confirmed, order_ref, total = await check_confirmation(page, adapter)
            if confirmed:
                return self._success(order_ref, total)

            info = await self._look(page, CHECKOUT_PROMPT)
            step = info.get("current_step") or "unknown"
            self._log.append(f"checkout step: {step}")

            if info.get("is_order_confirmed") or step == "confirmation":
                return self._success(info.get("order_number"), parse_price(info.get("total_price")))
            if step == "login":
                raise AgentStop(AttemptStatus.FAILED.value, "Session expired: redirected to login")
            if step == "error":
                raise AgentStop(AttemptStatus.FAILED.value, info.get("error_message") or "Checkout error")
            if info.get("needs_verification"):
                raise AgentStop(AttemptStatus.FAILED.value, "Verification code required: cannot proceed automatically")

            # Post-cart ceiling check on the checkout total; item stays carted
            total = parse_price(info.get("total_price"))
            if (
                step == "review"
                and ctx.price_ceiling is not None
                and total is not None
                and total > ctx.price_ceiling * ctx.quantity
            ):
                raise AgentStop(
                    AttemptStatus.CARTED.value,
                    f"Ceiling exceeded after cart: total ${total} > ${ctx.price_ceiling * ctx.quantity}",
                    total_price=total,
                )

            if self._reached_payment(adapter, step) and not reported_payment:
                reported_payment = True
                if progress:
                    await progress(AttemptStatus.CHECKOUT_PAYMENT.value, f"checkout at {step}")

            if info.get("needs_cvv"):
                code = ctx.credentials.verification_code
                if not code:
                    raise AgentStop(
                        AttemptStatus.FAILED.value,
                        "Card verification code required but not supplied",
                    )
                self._spend("enter card verification code")
                if await self._fill_first(page, adapter.cvv_selectors, code) is None:
                    raise AgentStop(AttemptStatus.FAILED.value, "Card verification field not found")
                await self._click_first(page, adapter.cvv_confirm_selectors)
                await self._settle(2.0, 4.0)
                continue

            self._spend(f"advance from {step}")
            candidates = list(adapter.advance_selectors)
            button_text = info.get("primary_button_text")
            if button_text and not FORBIDDEN_BUTTON_TEXT.search(button_text):
                candidates.insert(0, f'button:has-text("{button_text}")')
            if await self._click_first(page, candidates) is None:
                logger.info(f"No advance button found at {step}")
            await self._settle(2.0, 3.5)

    @staticmethod
    def _reached_payment(adapter: RetailerAdapter, step: str) -> bool:
        stages = adapter.checkout_steps()
        if step not in stages or "payment" not in stages:
            return False
        return stages.index(step) >= stages.index("payment")

    def _success(self, order_ref: Optional[str], total: Optional[Decimal]) -> PurchaseResult:
        self._log.append("order confirmed")
        return PurchaseResult(
            status=AttemptStatus.SUCCESS.value,
            order_ref=order_ref or "unknown",
            total_price=total,
            steps_completed=list(self._log),
            path=PATH_AGENT,
        )

    async def run(
        self,
        page: Any,
        ctx: PurchaseContext,
        adapter: RetailerAdapter,
        progress: Optional[ProgressCallback] = None,
    ) -> PurchaseResult:
        """Run the full flow; stop conditions become a non-success result."""
        self._steps_used = 0
        self._log = []
        try:
            await self._login(page, ctx, adapter)
            await self._add_to_cart(page, ctx, adapter, progress)
            return await self._checkout(page, ctx, adapter, progress)
        except AgentStop as stop:
            logger.warning(f"Agent stopped for attempt {ctx.attempt_id}: {stop.reason}")
            return PurchaseResult(
                status=stop.status,
                order_ref=stop.order_ref,
                total_price=stop.total_price,
                failure_reason=stop.reason,
                steps_completed=list(self._log),
                path=PATH_AGENT,
            )
