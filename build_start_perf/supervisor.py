"""
Dev server process supervision.

ProcessSupervisor runs the server command through the shell in its own
process group, pumps both output pipes into the console passthrough and the
OutputWatcher, and tears the whole group down with a SIGTERM/SIGKILL ladder.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TextIO

from .config import TIMEOUTS
from .errors import ServerCrash
from .output_watcher import STDERR, STDOUT, LineBuffer, LineChannel, OutputLine, OutputWatcher, passthrough

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536

# sh reports a SIGTERM'd child as 143.
EXPECTED_RETURNCODES = {-signal.SIGTERM, -signal.SIGKILL, 143}


class ServerState(enum.Enum):
    STARTING = 1
    READY = 2
    TERMINATING = 3
    TERMINATED = 4


@dataclass(frozen=True)
class ExitInfo:
    returncode: Optional[int]

    @property
    def signal_name(self) -> Optional[str]:
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return None

    @property
    def expected(self) -> bool:
        return self.returncode in EXPECTED_RETURNCODES


class ProcessGroup:
    """
    Signal target for a process group led by pid.

    Signals go to the whole group first. If group delivery fails they are sent
    to the leader pid instead.
    """

    def __init__(self, pid: int, pgid: Optional[int] = None):
        self.pid = pid
        self.pgid = pgid if pgid is not None else pid

    def send(self, sig: signal.Signals) -> Optional[str]:
        try:
            os.killpg(self.pgid, sig)
            return "group"
        except OSError as exc:
            logger.debug(f"Signalling process group {self.pgid} failed ({exc}), falling back to pid {self.pid}")
        try:
            os.kill(self.pid, sig)
            return "leader"
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} already exited")
        except OSError as exc:
            logger.error(f"Could not send {sig.name} to process {self.pid}: {exc}")
        return None

    async def terminate(
        self,
        wait_exit: Callable[[], Awaitable[Any]],
        grace_ms: int = TIMEOUTS["server_shutdown"],
        kill_wait_ms: int = 1000,
    ) -> bool:
        """SIGTERM, wait up to grace_ms, then SIGKILL. Returns True once exit is observed."""
        self.send(signal.SIGTERM)
        try:
            await asyncio.wait_for(wait_exit(), grace_ms / 1000.0)
            return True
        except asyncio.TimeoutError:
            pass

        print("Force killing server process group...")
        self.send(signal.SIGKILL)
        try:
            await asyncio.wait_for(wait_exit(), kill_wait_ms / 1000.0)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Process {self.pid} did not report exit after SIGKILL")
            return False


class ExitProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """
    Stream protocol that also reports when the leader process exits.

    Process.wait() only returns once every pipe has reached EOF, which never
    happens while a background child still holds stdout or stderr. `exited`
    resolves with the return code as soon as the leader itself is reaped.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, limit: int = CHUNK_SIZE):
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future = loop.create_future()
        self.transport: Optional[asyncio.SubprocessTransport] = None

    def connection_made(self, transport) -> None:
        super().connection_made(transport)
        self.transport = transport

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(self.transport.get_returncode())


class ServerProcess:
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: str,
        exited: Optional[asyncio.Future] = None,
        transport: Optional[asyncio.SubprocessTransport] = None,
    ):
        self.process = process
        self.exited = exited
        self.transport = transport
        self.command = command
        self.pid = process.pid
        self.pgid = process.pid
        self.group = ProcessGroup(self.pid, self.pgid)
        self.state = ServerState.STARTING
        self.exit_info: Optional[ExitInfo] = None

    def advance(self, state: ServerState) -> bool:
        """Move forward to state. States are never revisited."""
        if state.value <= self.state.value:
            return False
        logger.debug(f"Dev server {self.pid}: {self.state.name} -> {state.name}")
        self.state = state
        return True

    async def wait(self) -> int:
        """Return code of the leader. Does not wait for the output pipes to close."""
        if self.exited is None:
            return await self.process.wait()
        return await asyncio.shield(self.exited)

    def release(self) -> None:
        if self.transport is not None:
            self.transport.close()


class ProcessSupervisor:
    def __init__(
        self,
        grace_ms: int = TIMEOUTS["server_shutdown"],
        settle_ms: int = TIMEOUTS["server_settle"],
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ):
        self.grace_ms = grace_ms
        self.settle_ms = settle_ms
        self.stdout = stdout
        self.stderr = stderr

        self.server: Optional[ServerProcess] = None
        self.watcher: Optional[OutputWatcher] = None
        self._channel: Optional[LineChannel] = None
        self._pumps: List[asyncio.Future] = []
        self._open_streams = 0
        self._exit_task: Optional[asyncio.Future] = None
        self._crashed: Optional[asyncio.Future] = None
        self._terminating: Optional[asyncio.Future] = None

    @property
    def active(self) -> bool:
        return self.server is not None and self.server.state is not ServerState.TERMINATED

    async def start(self, command: str, cwd: Optional[str] = None) -> ServerProcess:
        if self.active:
            raise RuntimeError(f"Dev server already running (pid {self.server.pid})")

        print(f"Starting dev server with: {command}")
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.subprocess_shell(
            lambda: ExitProtocol(loop),
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or os.getcwd(),
            start_new_session=True,
        )
        process = asyncio.subprocess.Process(transport, protocol, loop)

        server = ServerProcess(process, command, exited=protocol.exited, transport=transport)
        self.server = server
        self._channel = LineChannel()
        self.watcher = OutputWatcher(self._channel)
        self._crashed = loop.create_future()
        self._terminating = None

        self._open_streams = 2
        self._pumps = [
            asyncio.ensure_future(self._pump(process.stdout, STDOUT)),
            asyncio.ensure_future(self._pump(process.stderr, STDERR)),
        ]
        self._exit_task = asyncio.ensure_future(self._watch_exit(server))
        logger.info(f"Dev server started (pid {server.pid}, process group {server.pgid})")
        return server

    async def wait_until_ready(self, pattern: str, timeout_ms: int = TIMEOUTS["server_start"]) -> OutputLine:
        """
        Wait for pattern in the server output.

        Raises ServerStartTimeout when the deadline passes and ServerCrash when
        the server exits abnormally first.
        """
        server = self._require_server()
        print("Waiting for server to start...")

        watch = asyncio.ensure_future(self.watcher.await_pattern(pattern, timeout_ms))
        try:
            await asyncio.wait({watch, self._crashed}, return_when=asyncio.FIRST_COMPLETED)
            if not watch.done():
                raise ServerCrash(self._crashed.result().returncode)
            line = watch.result()
        finally:
            if not watch.done():
                watch.cancel()

        server.advance(ServerState.READY)
        return line

    async def terminate(self) -> None:
        """Stop the server's process group. Safe to call repeatedly; never raises."""
        server = self.server
        if server is None or server.state is ServerState.TERMINATED:
            return
        if self._terminating is None:
            self._terminating = asyncio.ensure_future(self._terminate(server))
        await asyncio.shield(self._terminating)

    async def _terminate(self, server: ServerProcess) -> None:
        try:
            print("\nTerminating dev server...")
            server.advance(ServerState.TERMINATING)
            exited = await server.group.terminate(server.wait, grace_ms=self.grace_ms)
            await asyncio.sleep(self.settle_ms / 1000.0)
            if exited:
                print("Dev server terminated\n")
        except Exception as exc:
            logger.error(f"Error terminating server: {exc}")
        finally:
            await self._close_output()
            server.release()
            server.advance(ServerState.TERMINATED)

    async def _close_output(self) -> None:
        pending = [task for task in self._pumps if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=self.settle_ms / 1000.0)
        leftovers = [task for task in self._pumps + [self._exit_task] if task is not None and not task.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)
        if self._channel is not None:
            self._channel.close()

    async def _pump(self, stream: asyncio.StreamReader, source: str) -> None:
        buffer = LineBuffer()
        try:
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                for text in buffer.feed(chunk):
                    self._emit(OutputLine(source, text))
            for text in buffer.flush():
                self._emit(OutputLine(source, text))
        finally:
            self._open_streams -= 1
            if self._open_streams == 0 and self._channel is not None:
                self._channel.close()

    def _emit(self, line: OutputLine) -> None:
        passthrough(line, self.stdout, self.stderr)
        # Only the readiness watch consumes the channel.
        if self.server is not None and self.server.state is ServerState.STARTING:
            self._channel.put(line)

    async def _watch_exit(self, server: ServerProcess) -> None:
        returncode = await server.wait()
        server.exit_info = ExitInfo(returncode)

        if server.state in (ServerState.TERMINATING, ServerState.TERMINATED) or server.exit_info.expected:
            logger.debug(f"Dev server exited with {server.exit_info.signal_name or returncode}")
            return

        if server.state is ServerState.STARTING:
            logger.error(f"Dev server exited before it was ready (exit code {returncode})")
            if not self._crashed.done():
                self._crashed.set_result(server.exit_info)
        else:
            logger.warning(f"Dev server exited unexpectedly (exit code {returncode})")

    def _require_server(self) -> ServerProcess:
        if self.server is None:
            raise RuntimeError("Dev server has not been started")
        return self.server
