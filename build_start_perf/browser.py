"""Playwright-backed browser session used to time page and reload loads."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    Error as PlaywrightError,
    Page,
    Playwright,
    Request,
    Response,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import TIMEOUTS, VIEWPORT, http_credentials, show_browser
from .errors import BrowserLaunchFailure, NetworkIdleTimeout, PageLoadFailure, SelectorTimeout

logger = logging.getLogger(__name__)

ACCEPTED_REDIRECTS = (302, 304)


def is_acceptable_status(status: int) -> bool:
    return 200 <= status < 300 or status in ACCEPTED_REDIRECTS


class NetworkIdleTracker:
    """Counts in-flight requests on a page and when traffic last changed."""

    def __init__(self):
        self.inflight: Dict[int, str] = {}
        self.last_activity = time.monotonic()

    def attach(self, page: Page) -> None:
        def on_request(request: Request):
            self.inflight[id(request)] = request.url
            self.last_activity = time.monotonic()

        def on_done(request: Request):
            self.inflight.pop(id(request), None)
            self.last_activity = time.monotonic()

        page.on("request", on_request)
        page.on("requestfinished", on_done)
        page.on("requestfailed", on_done)

    def idle_for(self) -> float:
        if self.inflight:
            return 0.0
        return (time.monotonic() - self.last_activity) * 1000.0

    async def wait_for_idle(
        self,
        idle_ms: int = TIMEOUTS["network_idle"],
        timeout_ms: int = TIMEOUTS["network_idle_limit"],
        poll_ms: int = 50,
    ) -> None:
        # Quiescence is measured from the moment of the call.
        self.last_activity = time.monotonic()
        deadline = time.monotonic() + timeout_ms / 1000.0
        while self.idle_for() < idle_ms:
            if time.monotonic() >= deadline:
                raise NetworkIdleTimeout(timeout_ms)
            await asyncio.sleep(poll_ms / 1000.0)


class PlaywrightBrowser:
    def __init__(self, headless: Optional[bool] = None, credentials: Optional[Dict[str, str]] = None):
        self.headless = (not show_browser()) if headless is None else headless
        self.credentials = credentials if credentials is not None else http_credentials()

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.network = NetworkIdleTracker()

    async def open(self) -> "PlaywrightBrowser":
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox"],
                handle_sigint=False,
                handle_sigterm=False,
            )
            context_options = {"viewport": VIEWPORT}
            if self.credentials:
                context_options["http_credentials"] = self.credentials
            self._context = await self._browser.new_context(**context_options)
            self.page = await self._context.new_page()
        except (PlaywrightError, OSError) as exc:
            await self.close()
            raise BrowserLaunchFailure(f"Could not launch browser: {exc}") from exc

        self._attach_listeners(self.page)
        return self

    def _attach_listeners(self, page: Page) -> None:
        def on_console(message: ConsoleMessage):
            if message.type in ("error", "warning"):
                logger.warning(f"PAGE {message.type.upper()}: {message.text}")

        def on_page_error(error: PlaywrightError):
            logger.error(f"PAGE ERROR: {error.message}")

        def on_response(response: Response):
            if not response.ok and response.status not in ACCEPTED_REDIRECTS:
                logger.warning(f"FAILED HTTP REQUEST TO {response.url} Status: {response.status}")

        page.on("console", on_console)
        page.on("pageerror", on_page_error)
        page.on("response", on_response)
        self.network.attach(page)

    async def navigate(self, url: str, timeout_ms: int = TIMEOUTS["page_load"]) -> Optional[Response]:
        logger.info(f"Loading page: {url}")
        try:
            return await self._require_page().goto(url, timeout=timeout_ms, wait_until="load")
        except PlaywrightTimeoutError as exc:
            raise PageLoadFailure(f"Navigation timeout of {timeout_ms} ms exceeded") from exc

    async def wait_for_network_idle(
        self,
        idle_ms: int = TIMEOUTS["network_idle"],
        timeout_ms: int = TIMEOUTS["network_idle_limit"],
    ) -> None:
        await self.network.wait_for_idle(idle_ms=idle_ms, timeout_ms=timeout_ms)

    async def wait_for_selector(self, selector: str, timeout_ms: int = TIMEOUTS["selector"]) -> None:
        logger.info(f"Waiting for element: {selector}")
        try:
            await self._require_page().wait_for_selector(selector, state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SelectorTimeout(selector, timeout_ms) from exc

    async def close(self) -> None:
        """Release the browser. Errors are logged, never raised."""
        browser, playwright = self._browser, self._playwright
        self._browser = self._context = self.page = None
        self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                logger.error(f"Error closing browser: {exc}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:
                logger.error(f"Error stopping Playwright: {exc}")

    def _require_page(self) -> Page:
        if self.page is None:
            raise RuntimeError("Browser is not open")
        return self.page
