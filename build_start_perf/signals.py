from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Optional, Sequence

from .measure import MeasurementSession

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


class SignalHandler:
    """
    Runs the session cleanup on INT/TERM/QUIT, then hands exit code 0 to on_exit.

    Overlapping signals share the one in-flight cleanup task.
    """

    def __init__(
        self,
        session: MeasurementSession,
        on_exit: Callable[[int], None],
        signals: Sequence[signal.Signals] = HANDLED_SIGNALS,
    ):
        self.session = session
        self.on_exit = on_exit
        self.signals = tuple(signals)
        self.received: Optional[signal.Signals] = None
        self._task: Optional[asyncio.Future] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def triggered(self) -> bool:
        return self._task is not None

    def install(self) -> None:
        self._loop = asyncio.get_running_loop()
        for sig in self.signals:
            self._loop.add_signal_handler(sig, self.handle, sig)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self.signals:
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def handle(self, sig: signal.Signals) -> asyncio.Future:
        if self._task is None:
            self.received = sig
            print(f"\nReceived {sig.name}, cleaning up...")
            self._task = asyncio.ensure_future(self._cleanup_and_exit())
        else:
            logger.info(f"Received {sig.name}, cleanup already in progress")
        return self._task

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _cleanup_and_exit(self) -> None:
        try:
            await self.session.close()
        finally:
            self.on_exit(0)
