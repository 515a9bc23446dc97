"""Browser sessions for the purchase path."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright

from stocksniper.config import settings

logger = logging.getLogger(__name__)

STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class BrowserFactory:
    """
    Opens one isolated page per purchase.

    Uses a remote browser service over CDP when ``browser_cdp_url`` is set,
    otherwise a local headless Chromium with stealth launch arguments. The
    Playwright driver is started once and shared across sessions.
    """

    def __init__(self, cdp_url: Optional[str] = None, headless: Optional[bool] = None):
        self.cdp_url = cdp_url if cdp_url is not None else settings.browser_cdp_url
        self.headless = settings.browser_headless if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def _ensure_browser(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        if self._browser is None or not self._browser.is_connected():
            if self.cdp_url:
                logger.info("Connecting to remote browser over CDP")
                self._browser = await self._playwright.chromium.connect_over_cdp(self.cdp_url)
            else:
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=STEALTH_ARGS,
                )
        return self._browser

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Page]:
        """Fresh context + page, closed on exit."""
        browser = await self._ensure_browser()
        context = await browser.new_context(
            user_agent=DEFAULT_USER_AGENT,
            viewport={"width": 1366, "height": 900},
            locale="en-US",
        )
        try:
            page = await context.new_page()
            page.set_default_timeout(15000)
            yield page
        finally:
            try:
                await context.close()
            except Exception as e:
                logger.error(f"Error closing browser context: {e}")

    async def close(self):
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
