"""
Measurement pipeline.

A MeasurementSession owns the dev server supervisor and the browser for one
run. measure() drives server start, page load and the optional reload timing
inside the session, and the session's close() tears both down exactly once,
server first, whichever way the run ends.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .browser import PlaywrightBrowser, is_acceptable_status
from .config import TIMEOUTS, Options
from .errors import FileNotFoundForReload, PageLoadFailure
from .file_touch import resolve_reload_file, sentinel_write
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def now_ms() -> float:
    return time.perf_counter() * 1000.0


@dataclass
class MeasurementResult:
    at_start: float
    at_server_up: float
    at_first_paint: float
    at_app_load: float
    at_file_change: Optional[float] = None
    at_file_changed: Optional[float] = None
    at_reload_complete: Optional[float] = None

    @property
    def reload_measured(self) -> bool:
        return self.at_file_changed is not None and self.at_reload_complete is not None


class MeasurementSession:
    """Per-run context holding the server and browser handles."""

    _active: Optional["MeasurementSession"] = None

    def __init__(
        self,
        options: Options,
        supervisor: Optional[ProcessSupervisor] = None,
        browser_factory: Callable[[], PlaywrightBrowser] = PlaywrightBrowser,
    ):
        self.options = options
        self.supervisor = supervisor or ProcessSupervisor()
        self.browser_factory = browser_factory
        self.browser: Optional[PlaywrightBrowser] = None
        self._closing: Optional[asyncio.Future] = None

    @property
    def closed(self) -> bool:
        return self._closing is not None

    async def __aenter__(self) -> "MeasurementSession":
        if self.closed:
            raise RuntimeError("Measurement session already closed")
        active = MeasurementSession._active
        if active is not None and active is not self:
            raise RuntimeError("Another measurement session is already running")
        MeasurementSession._active = self
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open_browser(self) -> PlaywrightBrowser:
        self.browser = self.browser_factory()
        await self.browser.open()
        return self.browser

    async def close(self) -> None:
        """Terminate the server, then release the browser. Runs once; later calls wait for it."""
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._close())
        await asyncio.shield(self._closing)

    async def _close(self) -> None:
        await self.supervisor.terminate()
        if self.browser is not None:
            try:
                await self.browser.close()
            except Exception as exc:
                logger.error(f"Error closing browser: {exc}")
        if MeasurementSession._active is self:
            MeasurementSession._active = None


async def measure_page_load(
    browser: PlaywrightBrowser,
    options: Options,
    clock: Callable[[], float] = now_ms,
) -> Dict[str, float]:
    response = await browser.navigate(options.url, options.page_load_timeout)
    if response is None:
        raise PageLoadFailure(f"Failed to load page: no response from {options.url}")
    if not is_acceptable_status(response.status):
        raise PageLoadFailure(f"Failed to load page: {response.status}", status=response.status)

    at_first_paint = clock()

    logger.info("Waiting for page to fully load...")
    await browser.wait_for_network_idle()
    await browser.wait_for_selector(options.wait_for_selector, TIMEOUTS["selector"])

    at_app_load = clock()
    logger.info("Page loaded")

    return {"at_first_paint": at_first_paint, "at_app_load": at_app_load}


async def measure_file_reload(
    browser: PlaywrightBrowser,
    file: Optional[str],
    clock: Callable[[], float] = now_ms,
) -> Dict[str, float]:
    try:
        path = resolve_reload_file(file)
    except FileNotFoundForReload as exc:
        logger.warning(str(exc))
        return {}
    if path is None:
        logger.info("No file specified for reload test, skipping...")
        return {}

    logger.info(f"Testing reload with file: {file}")
    logger.info("Triggering file change...")
    at_file_change = clock()

    with sentinel_write(path):
        at_file_changed = clock()
        logger.info("Waiting for hot reload to complete...")
        await browser.wait_for_network_idle()
        at_reload_complete = clock()
        logger.info("Restoring original file content...")

    return {
        "at_file_change": at_file_change,
        "at_file_changed": at_file_changed,
        "at_reload_complete": at_reload_complete,
    }


async def measure(
    options: Options,
    session: Optional[MeasurementSession] = None,
    clock: Callable[[], float] = now_ms,
) -> MeasurementResult:
    session = session or MeasurementSession(options)
    async with session:
        try:
            browser = await session.open_browser()
            logger.info("Starting performance measurement...\n")

            at_start = clock()
            await session.supervisor.start(options.server_command)
            await session.supervisor.wait_until_ready(options.readiness_pattern, options.server_start_timeout)
            at_server_up = clock()
            print(f"Server ready at {options.url}")

            page_load = await measure_page_load(browser, options, clock)
            reload = await measure_file_reload(browser, options.file, clock)
            await session.supervisor.terminate()
        except Exception as exc:
            logger.error(f"Performance measurement failed: {exc}")
            raise

    return MeasurementResult(at_start=at_start, at_server_up=at_server_up, **page_load, **reload)
