from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class MeasurementError(RuntimeError):
    """Base class for failures that abort a measurement run."""


class ServerStartTimeout(MeasurementError):
    def __init__(self, pattern: str, timeout_ms: int) -> None:
        super().__init__(f"Server start timeout: '{pattern}' not seen within {timeout_ms} ms")
        self.pattern = pattern
        self.timeout_ms = timeout_ms


class ServerCrash(MeasurementError):
    def __init__(self, returncode: Optional[int]) -> None:
        super().__init__(f"Dev server exited before it was ready (exit code {returncode})")
        self.returncode = returncode


class PageLoadFailure(MeasurementError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SelectorTimeout(MeasurementError):
    def __init__(self, selector: str, timeout_ms: int) -> None:
        super().__init__(f"Element '{selector}' did not become visible within {timeout_ms} ms")
        self.selector = selector
        self.timeout_ms = timeout_ms


class NetworkIdleTimeout(MeasurementError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Network did not become idle within {timeout_ms} ms")
        self.timeout_ms = timeout_ms


class BrowserLaunchFailure(MeasurementError):
    pass


class FileNotFoundForReload(FileNotFoundError):
    """Reload target is missing; the reload measurement is skipped."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(f"File {path} not found, skipping reload test...")
        self.path = path
