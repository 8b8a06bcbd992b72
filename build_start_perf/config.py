"""Options, timeouts and environment settings for a measurement run."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional

LOG_LEVELS = ("log", "warn", "error")

TIMEOUTS = {
    "server_start": 30000,
    "page_load": 30000,
    "selector": 60000,
    "server_shutdown": 3000,
    "server_settle": 100,
    "network_idle": 500,
    "network_idle_limit": 30000,
}

DEFAULT_OPTIONS = {
    "url": "http://localhost:4200",
    "file": None,
    "command": "pnpm start",
    "wait_for": "body",
    "log_level": "warn",
}

VIEWPORT = {"width": 1366, "height": 768}


def server_start_timeout_ms() -> int:
    """Startup deadline, overridable with SERVER_START_TIMEOUT_MS."""
    raw = os.getenv("SERVER_START_TIMEOUT_MS")
    if not raw:
        return TIMEOUTS["server_start"]
    try:
        return int(raw)
    except ValueError:
        return TIMEOUTS["server_start"]


def show_browser() -> bool:
    return os.getenv("SHOW_BROWSER") == "true"


def http_credentials() -> Optional[Dict[str, str]]:
    username = os.getenv("AUTH_USER")
    password = os.getenv("AUTH_PASSWORD")
    if username and password:
        return {"username": username, "password": password}
    return None


@dataclass(frozen=True)
class Options:
    url: str = DEFAULT_OPTIONS["url"]
    file: Optional[str] = None
    command: str = DEFAULT_OPTIONS["command"]
    wait_for_selector: str = DEFAULT_OPTIONS["wait_for"]
    page_load_timeout: int = TIMEOUTS["page_load"]
    log_level: str = DEFAULT_OPTIONS["log_level"]
    server_start_timeout: int = TIMEOUTS["server_start"]
    server_args: str = ""

    @property
    def readiness_pattern(self) -> str:
        # Only a single trailing slash is dropped.
        if self.url.endswith("/"):
            return self.url[:-1]
        return self.url

    @property
    def server_command(self) -> str:
        if self.server_args:
            return f"{self.command} {self.server_args}"
        return self.command
