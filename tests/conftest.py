from __future__ import annotations

import io
import logging
import os
import sys
from types import SimpleNamespace
from typing import Callable, List, Optional

import pytest

from build_start_perf.log import PACKAGE_LOGGER
from build_start_perf.measure import MeasurementSession
from build_start_perf.supervisor import ProcessSupervisor

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")


class FakeBrowser:
    """In-memory stand-in for PlaywrightBrowser that records every call."""

    def __init__(
        self,
        status: Optional[int] = 200,
        on_network_idle: Optional[Callable[[int], None]] = None,
        open_error: Optional[Exception] = None,
        selector_error: Optional[Exception] = None,
    ):
        self.status = status
        self.on_network_idle = on_network_idle
        self.open_error = open_error
        self.selector_error = selector_error
        self.calls: List[str] = []
        self.network_idle_count = 0
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    async def open(self):
        self.calls.append("open")
        if self.open_error is not None:
            raise self.open_error
        return self

    async def navigate(self, url, timeout_ms):
        self.calls.append("navigate")
        self.navigated_to = url
        if self.status is None:
            return None
        return SimpleNamespace(status=self.status, url=url)

    async def wait_for_network_idle(self):
        self.calls.append("network_idle")
        self.network_idle_count += 1
        if self.on_network_idle is not None:
            self.on_network_idle(self.network_idle_count)

    async def wait_for_selector(self, selector, timeout_ms):
        self.calls.append("selector")
        self.selector = selector
        if self.selector_error is not None:
            raise self.selector_error

    async def close(self):
        self.calls.append("close")
        self.close_count += 1


def process_gone(pid: int) -> bool:
    """True once pid no longer exists or is only a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            return f.read().rsplit(")", 1)[1].split()[0] == "Z"
    except OSError:
        return False


@pytest.fixture(autouse=True)
def reset_active_session():
    MeasurementSession._active = None
    yield
    MeasurementSession._active = None


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def console():
    return SimpleNamespace(stdout=io.StringIO(), stderr=io.StringIO())


@pytest.fixture
def supervisor(console):
    return ProcessSupervisor(grace_ms=500, settle_ms=10, stdout=console.stdout, stderr=console.stderr)
