"""
Browser factory -- launches Playwright Chromium with stealth injection and
exposes the results page as a ``ListingPage`` for the orchestrator.
"""

import asyncio
import random
import urllib.parse
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from bs4 import BeautifulSoup, Tag
from loguru import logger
from playwright.async_api import Page, async_playwright
from playwright_stealth import Stealth

import gmb_export.config as cfg
from gmb_export.core.error_handler import ErrorHandler
from gmb_export.core.selectors import SelectorResolver
from gmb_export.models.billing import ExportTarget


class MapsPage:
    """
    Read-only view of a Google Maps results page.

    Listing nodes are snapshotted as HTML and parsed with BeautifulSoup, so
    record extraction never touches the live DOM.
    """

    def __init__(
        self,
        page: Page,
        resolver: Optional[SelectorResolver] = None,
    ) -> None:
        self.page = page
        self.resolver = resolver or SelectorResolver()

    async def _first_attached(self, selectors) -> Optional[str]:
        for selector in selectors:
            if await self.page.locator(selector).count():
                return selector
        return None

    async def is_ready(self) -> bool:
        return await self._first_attached(cfg.READY_LANDMARKS) is not None

    async def load_more(self) -> None:
        container = await self._first_attached(cfg.SCROLL_CONTAINERS)
        if container is None:
            await self.page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
            return
        await self.page.locator(container).first.hover()
        delta = random.randint(cfg.SCROLL_DISTANCE_MIN, cfg.SCROLL_DISTANCE_MAX)
        await self.page.mouse.wheel(0, delta)

    async def content_height(self) -> int:
        container = await self._first_attached(cfg.SCROLL_CONTAINERS)
        if container is None:
            return await self.page.evaluate("document.body.scrollHeight")
        return await self.page.locator(container).first.evaluate("el => el.scrollHeight")

    async def listing_nodes(self) -> List[Tag]:
        html = await self.page.content()
        soup = BeautifulSoup(html, "lxml")
        matched = self.resolver.resolve("listing", soup)
        return list(matched.nodes) if matched else []

    async def reached_end(self) -> bool:
        marker = self.page.locator(cfg.END_OF_LIST)
        if not await marker.count():
            return False
        return await marker.first.is_visible()

    async def screenshot(self, path: str) -> None:
        await self.page.screenshot(path=path, full_page=True)


async def search_maps(page: Page, target: ExportTarget) -> None:
    """
    Navigate directly to Google Maps search results for *target*.

    Loading the search URL avoids the homepage search box, cookie overlays
    and timing issues with the input becoming interactive. Readiness itself
    is left to the orchestrator's landmark polling.
    """
    encoded = urllib.parse.quote(target.search_text)
    url = cfg.GOOGLE_MAPS_SEARCH_URL.format(query=encoded)

    # Google Maps streams tiles indefinitely, so "networkidle" never fires.
    await page.goto(url, wait_until="domcontentloaded")
    logger.info("Navigated to search results for '{}'", target.search_text)

    accept_btn = page.locator(cfg.ACCEPT_COOKIES)
    if await accept_btn.count() and await accept_btn.first.is_visible():
        await accept_btn.first.click()
        logger.info("Cookie consent dismissed")
        await asyncio.sleep(1)


@asynccontextmanager
async def open_maps_page(target: ExportTarget) -> AsyncIterator[MapsPage]:
    """
    Launch Chromium with stealth applied and yield a ``MapsPage`` already
    navigated to *target*. The browser is closed on exit.
    """
    async with async_playwright() as pw:
        browser = await pw.chromium.launch(
            headless=cfg.HEADLESS,
            args=[
                "--disable-blink-features=AutomationControlled",
                "--no-sandbox",
            ],
        )
        try:
            context = await browser.new_context(
                viewport={
                    "width": cfg.VIEWPORT_WIDTH,
                    "height": cfg.VIEWPORT_HEIGHT,
                },
                locale=cfg.LOCALE,
                user_agent=cfg.USER_AGENT,
            )
            context.set_default_timeout(cfg.PAGE_LOAD_TIMEOUT)
            context.set_default_navigation_timeout(cfg.NAVIGATION_TIMEOUT)

            page = await context.new_page()
            await Stealth().apply_stealth_async(page)
            logger.info("Browser context created (headless={})", cfg.HEADLESS)

            await ErrorHandler.retry_with_backoff(search_maps, page, target)
            yield MapsPage(page)
        finally:
            await browser.close()
            logger.info("Browser closed")
