"""Replay recorded playbooks against a live browser page."""

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from stocksniper.autobuy.actions import (
    TEMPLATE_VAR,
    AssertPrice,
    AssertText,
    AssertUrl,
    Click,
    DismissOverlay,
    Fill,
    Navigate,
    Wait,
    WaitForVisible,
    describe,
    parse_steps,
    substitute,
)
from stocksniper.config import settings
from stocksniper.db.models import AttemptStatus
from stocksniper.resolve.base import parse_price
from stocksniper.retailers.base import RetailerAdapter

logger = logging.getLogger(__name__)

ORDER_REF_PATTERN = re.compile(r"order\s*(?:number|#|no\.?)\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{5,})", re.IGNORECASE)
TOTAL_PATTERN = re.compile(r"total[^$\d]{0,20}\$\s*([\d,]+\.\d{2})", re.IGNORECASE)
PRICE_PATTERN = re.compile(r"\$\s*([\d,]+\.\d{2})")


class StepFailed(Exception):
    """
    A non-optional step could not be completed.

    ``outcome`` is set when the failure decides the purchase itself (a price
    gate, or an order click that may have landed) rather than pointing at a
    broken playbook.
    """

    def __init__(self, message: str, outcome: Optional[str] = None):
        super().__init__(message)
        self.outcome = outcome


@dataclass
class ReplayResult:
    success: bool
    failed_at: Optional[int] = None  # 1-based step number
    error: Optional[str] = None
    steps_completed: list[str] = field(default_factory=list)
    order_ref: Optional[str] = None
    total_price: Optional[Decimal] = None
    outcome: Optional[str] = None  # attempt status decided by the failing step
    committed: bool = False  # the order may have been placed


async def page_text(page: Any, selector: str = "body", timeout_ms: Optional[int] = None) -> str:
    """Visible text of ``selector``, empty when the page has none yet."""
    try:
        return await page.inner_text(selector, timeout=timeout_ms)
    except PlaywrightError:
        return ""


async def check_confirmation(page: Any, adapter: RetailerAdapter) -> tuple[bool, Optional[str], Optional[Decimal]]:
    """
    Confirm a genuine order confirmation page.

    Returns:
        (confirmed, order_ref, total_price)
    """
    url = page.url or ""
    text = await page_text(page)
    lowered = text.lower()

    confirmed = any(p in url for p in adapter.confirmation_url_patterns) or any(
        p in lowered for p in adapter.confirmation_text_patterns
    )
    if not confirmed:
        return False, None, None

    ref_match = ORDER_REF_PATTERN.search(text)
    total_match = TOTAL_PATTERN.search(text)
    return (
        True,
        ref_match.group(1) if ref_match else None,
        parse_price(total_match.group(1)) if total_match else None,
    )


class PlaybookEngine:
    """
    Deterministic step replay.

    Steps run strictly in order with a short random pause between them. A
    non-optional failure aborts immediately with the 1-based step number.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def _pause(self):
        delay_ms = self._rng.uniform(
            settings.playbook_step_min_delay_ms, settings.playbook_step_max_delay_ms
        )
        await self._sleep(delay_ms / 1000)

    async def _first_visible(self, page: Any, selectors: list[str], timeout_ms: int) -> Optional[str]:
        """First selector that becomes visible, trying each in turn."""
        per_selector = max(500, timeout_ms // max(1, len(selectors)))
        for i, selector in enumerate(selectors):
            try:
                await page.wait_for_selector(selector, state="visible", timeout=per_selector)
                logger.debug(f"Selector {i + 1}/{len(selectors)} matched: {selector[:60]}")
                return selector
            except PlaywrightTimeoutError:
                logger.debug(f"Selector {i + 1}/{len(selectors)} timed out: {selector[:60]}")
            except PlaywrightError as e:
                logger.debug(f"Selector {i + 1}/{len(selectors)} error: {selector[:60]} - {e}")
        return None

    async def _check_price(self, page: Any, step: AssertPrice, variables: dict[str, str]) -> str:
        """Same ceiling gates as the vision agent, read from the page text."""
        limit = parse_price(substitute(step.limit, variables))
        if limit is None:
            return "price check skipped (no ceiling)"

        text = await page_text(page, step.selector, step.timeout_ms)
        if not text and step.selector != "body":
            text = await page_text(page)
        if step.stage == "checkout":
            # Order summaries list subtotals before the grand total
            found = TOTAL_PATTERN.findall(text)[-1:]
        else:
            found = PRICE_PATTERN.findall(text)[:1]
        price = parse_price(found[0]) if found else None
        if price is None:
            return f"price check skipped ({step.stage} price not shown)"

        if step.stage == "product":
            if price > limit:
                raise StepFailed(f"Price ${price} exceeds ceiling ${limit}", outcome=AttemptStatus.FAILED.value)
            return f"price ${price} within ceiling"

        quantity = parse_price(substitute(step.quantity, variables)) or Decimal(1)
        if price > limit * quantity:
            raise StepFailed(
                f"Ceiling exceeded after cart: total ${price} > ${limit * quantity}",
                outcome=AttemptStatus.CARTED.value,
            )
        return f"total ${price} within ceiling"

    async def _run_step(self, page: Any, step, variables: dict[str, str]) -> str:
        """
        Execute one step.

        Returns:
            Log line for the completed step

        Raises:
            StepFailed: the step failed and is not optional
        """
        if isinstance(step, Navigate):
            url = substitute(step.url, variables)
            try:
                await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=settings.browser_navigation_timeout_ms,
                )
            except PlaywrightError as e:
                raise StepFailed(f"navigation to {url} failed: {e}")
            return f"navigate {url}"

        if isinstance(step, Click):
            selector = await self._first_visible(page, step.selectors, step.timeout_ms)
            if selector is None:
                if step.optional:
                    return f"skipped optional click {step.selector}"
                raise StepFailed(f"none of {len(step.selectors)} selectors visible for click")
            try:
                await page.click(selector, timeout=step.timeout_ms)
            except PlaywrightError as e:
                if step.optional:
                    return f"skipped optional click {selector}"
                # The order click may have landed before the error
                outcome = AttemptStatus.CARTED.value if step.commits_order else None
                raise StepFailed(f"click {selector} failed: {e}", outcome=outcome)
            return f"click {selector}"

        if isinstance(step, Fill):
            value = substitute(step.value, variables)
            if not value or TEMPLATE_VAR.search(value):
                return f"skipped fill {step.selector} (no value)"
            selector = await self._first_visible(page, step.selectors, step.timeout_ms)
            if selector is None:
                if step.optional:
                    return f"skipped optional fill {step.selector}"
                raise StepFailed(f"none of {len(step.selectors)} selectors visible for fill")
            try:
                await page.fill(selector, value, timeout=step.timeout_ms)
            except PlaywrightError as e:
                raise StepFailed(f"fill {selector} failed: {e}")
            return f"fill {selector}"

        if isinstance(step, Wait):
            jitter = self._rng.uniform(0, step.jitter_ms) if step.jitter_ms else 0
            await self._sleep((step.ms + jitter) / 1000)
            return f"wait {step.ms}ms"

        if isinstance(step, WaitForVisible):
            if await self._first_visible(page, [step.selector], step.timeout_ms) is None:
                if step.optional:
                    return f"skipped optional wait for {step.selector}"
                raise StepFailed(f"{step.selector} never became visible")
            return f"visible {step.selector}"

        if isinstance(step, DismissOverlay):
            for selector in step.selectors:
                try:
                    if await page.is_visible(selector):
                        await page.click(selector, timeout=step.timeout_ms)
                        return f"dismissed overlay {selector}"
                except PlaywrightError as e:
                    logger.debug(f"Overlay {selector} not dismissed: {e}")
            return "no overlay to dismiss"

        if isinstance(step, AssertUrl):
            url = page.url or ""
            present = step.contains in url
            if present == step.fail_if:
                raise StepFailed(step.message or f"url check failed on {url}")
            return f"url ok ({step.contains})"

        if isinstance(step, AssertText):
            text = await page_text(page)
            present = re.search(step.pattern, text, re.IGNORECASE) is not None
            if present == step.fail_if:
                raise StepFailed(step.message or f"text check failed for /{step.pattern}/")
            return f"text ok (/{step.pattern}/)"

        if isinstance(step, AssertPrice):
            return await self._check_price(page, step, variables)

        raise StepFailed(f"unknown action {getattr(step, 'action', step)!r}")

    async def replay(
        self,
        page: Any,
        steps: list,
        variables: dict[str, str],
        adapter: RetailerAdapter,
    ) -> ReplayResult:
        """
        Replay ``steps`` (action models or stored dicts) and verify the order
        confirmation page afterwards.
        """
        if steps and isinstance(steps[0], dict):
            steps = parse_steps(steps)

        completed: list[str] = []
        total = len(steps)
        committed = False

        for index, step in enumerate(steps, start=1):
            if index > 1:
                await self._pause()
            try:
                line = await self._run_step(page, step, variables)
            except StepFailed as e:
                logger.warning(f"[replay {index}/{total}] FAILED {describe(step)}: {e}")
                return ReplayResult(
                    success=False,
                    failed_at=index,
                    error=str(e),
                    steps_completed=completed,
                    outcome=e.outcome,
                    committed=committed,
                )
            logger.info(f"[replay {index}/{total}] {line}")
            completed.append(line)
            if getattr(step, "commits_order", False) and not line.startswith("skipped"):
                committed = True

        confirmed, order_ref, total_price = await check_confirmation(page, adapter)
        if not confirmed:
            # Every step ran, so the order may have gone through
            logger.warning("Replay finished without an order confirmation page")
            return ReplayResult(
                success=False,
                failed_at=total + 1,
                error="no order confirmation after replay",
                steps_completed=completed,
                committed=True,
            )

        return ReplayResult(
            success=True,
            steps_completed=completed,
            order_ref=order_ref,
            total_price=total_price,
        )
