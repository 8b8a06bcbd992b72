"""Process supervision against real shell commands."""

import asyncio
import os
import re
import signal
import time
from types import SimpleNamespace

import pytest

from build_start_perf import supervisor as supervisor_module
from build_start_perf.errors import ServerCrash, ServerStartTimeout
from build_start_perf.supervisor import (
    ExitInfo,
    ProcessGroup,
    ProcessSupervisor,
    ServerProcess,
    ServerState,
)
from conftest import posix_only, process_gone

URL = "http://127.0.0.1:4598"


async def wait_gone(pid, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if process_gone(pid):
            return True
        await asyncio.sleep(0.05)
    return False


@posix_only
def test_ready_then_terminate(supervisor, console):
    async def scenario():
        server = await supervisor.start(f'echo "Serving on {URL}/"; sleep 30')
        line = await supervisor.wait_until_ready(URL, timeout_ms=5000)
        group_id = os.getpgid(server.pid)
        state_when_ready = server.state
        await supervisor.terminate()
        return server, line, group_id, state_when_ready

    server, line, group_id, state_when_ready = asyncio.run(scenario())
    assert line.text == f"Serving on {URL}/"
    assert group_id == server.pid == server.pgid
    assert state_when_ready is ServerState.READY
    assert server.state is ServerState.TERMINATED
    assert server.process.returncode is not None
    assert "[Server]\x1b[0m Serving on" in console.stdout.getvalue()


@posix_only
def test_terminate_kills_whole_process_group(supervisor, console):
    command = f'sleep 30 & echo "child $!"; echo "ready on {URL}"; wait'

    async def scenario():
        await supervisor.start(command)
        await supervisor.wait_until_ready(URL, timeout_ms=5000)
        child_pid = int(re.search(r"child (\d+)", console.stdout.getvalue()).group(1))
        assert not process_gone(child_pid)
        await supervisor.terminate()
        return await wait_gone(child_pid)

    assert asyncio.run(scenario()) is True


@posix_only
def test_escalates_to_sigkill_when_sigterm_is_ignored(supervisor, capsys):
    command = f"trap '' TERM; echo \"ready on {URL}\"; while :; do sleep 0.1; done"

    async def scenario():
        server = await supervisor.start(command)
        await supervisor.wait_until_ready(URL, timeout_ms=5000)
        await supervisor.terminate()
        return server

    server = asyncio.run(scenario())
    assert server.process.returncode == -signal.SIGKILL
    assert server.state is ServerState.TERMINATED
    assert "Force killing server process group..." in capsys.readouterr().out


@posix_only
def test_crash_before_ready_raises_server_crash(supervisor):
    async def scenario():
        await supervisor.start("echo booting; exit 3")
        try:
            await supervisor.wait_until_ready(URL, timeout_ms=5000)
        finally:
            await supervisor.terminate()

    with pytest.raises(ServerCrash) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.returncode == 3


@posix_only
def test_crash_detected_while_background_child_holds_output(supervisor, console):
    async def scenario():
        await supervisor.start('sleep 5 & echo "child $!"; echo booting; exit 3')
        started = time.monotonic()
        try:
            await supervisor.wait_until_ready(URL, timeout_ms=3000)
        except ServerCrash as exc:
            return exc, time.monotonic() - started
        finally:
            await supervisor.terminate()

    crash, elapsed = asyncio.run(scenario())
    assert crash.returncode == 3
    assert elapsed < 1.5
    assert supervisor.server.state is ServerState.TERMINATED
    child_pid = int(re.search(r"child (\d+)", console.stdout.getvalue()).group(1))
    assert asyncio.run(wait_gone(child_pid)) is True


@posix_only
def test_sigterm_exit_before_ready_is_not_a_crash(supervisor):
    async def scenario():
        await supervisor.start("echo booting; kill -TERM $$")
        try:
            await supervisor.wait_until_ready(URL, timeout_ms=300)
        finally:
            await supervisor.terminate()

    with pytest.raises(ServerStartTimeout):
        asyncio.run(scenario())


@posix_only
def test_start_timeout_when_url_never_printed(supervisor):
    async def scenario():
        server = await supervisor.start("echo compiling; sleep 30")
        try:
            await supervisor.wait_until_ready(URL, timeout_ms=300)
        finally:
            await supervisor.terminate()
        return server

    with pytest.raises(ServerStartTimeout):
        asyncio.run(scenario())
    assert supervisor.server.state is ServerState.TERMINATED


@posix_only
def test_terminate_is_idempotent(supervisor, capsys):
    async def scenario():
        await supervisor.start(f'echo "{URL}"; sleep 30')
        await supervisor.wait_until_ready(URL, timeout_ms=5000)
        await supervisor.terminate()
        await supervisor.terminate()

    asyncio.run(scenario())
    assert capsys.readouterr().out.count("Terminating dev server...") == 1


@posix_only
def test_concurrent_terminate_shares_one_shutdown(supervisor, capsys):
    async def scenario():
        await supervisor.start(f'echo "{URL}"; sleep 30')
        await supervisor.wait_until_ready(URL, timeout_ms=5000)
        await asyncio.gather(supervisor.terminate(), supervisor.terminate())

    asyncio.run(scenario())
    assert capsys.readouterr().out.count("Terminating dev server...") == 1
    assert supervisor.server.state is ServerState.TERMINATED


def test_terminate_without_server_is_a_noop():
    supervisor = ProcessSupervisor()
    asyncio.run(supervisor.terminate())
    asyncio.run(supervisor.terminate())
    assert supervisor.server is None


@posix_only
def test_only_one_server_at_a_time(supervisor):
    async def scenario():
        await supervisor.start("sleep 30")
        try:
            await supervisor.start("sleep 30")
        finally:
            await supervisor.terminate()

    with pytest.raises(RuntimeError, match="already running"):
        asyncio.run(scenario())


def test_state_transitions_are_monotonic():
    server = ServerProcess(SimpleNamespace(pid=4242), "pnpm start")
    assert server.state is ServerState.STARTING
    assert server.advance(ServerState.TERMINATING) is True
    assert server.advance(ServerState.READY) is False
    assert server.advance(ServerState.TERMINATING) is False
    assert server.advance(ServerState.TERMINATED) is True
    assert server.state is ServerState.TERMINATED


@pytest.mark.parametrize(
    "returncode, expected",
    [(-signal.SIGTERM, True), (-signal.SIGKILL, True), (143, True), (1, False), (0, False), (-signal.SIGSEGV, False)],
)
def test_expected_exit_codes(returncode, expected):
    assert ExitInfo(returncode).expected is expected


def test_exit_info_names_signal():
    assert ExitInfo(-signal.SIGTERM).signal_name == "SIGTERM"
    assert ExitInfo(143).signal_name is None


def test_group_signal_falls_back_to_leader_pid(monkeypatch):
    sent = []

    def refuse(pgid, sig):
        raise PermissionError("Operation not permitted")

    monkeypatch.setattr(supervisor_module.os, "killpg", refuse)
    monkeypatch.setattr(supervisor_module.os, "kill", lambda pid, sig: sent.append((pid, sig)))

    assert ProcessGroup(4242).send(signal.SIGTERM) == "leader"
    assert sent == [(4242, signal.SIGTERM)]


def test_group_signal_tolerates_reaped_process(monkeypatch):
    def gone(pid, sig):
        raise ProcessLookupError("No such process")

    monkeypatch.setattr(supervisor_module.os, "killpg", gone)
    monkeypatch.setattr(supervisor_module.os, "kill", gone)

    assert ProcessGroup(4242).send(signal.SIGKILL) is None


def test_group_terminate_escalates_after_grace(monkeypatch):
    sent = []
    monkeypatch.setattr(supervisor_module.os, "killpg", lambda pgid, sig: sent.append(sig))

    async def wait_exit():
        if signal.SIGKILL not in sent:
            await asyncio.sleep(10)

    exited = asyncio.run(ProcessGroup(4242).terminate(wait_exit, grace_ms=50, kill_wait_ms=50))
    assert exited is True
    assert sent == [signal.SIGTERM, signal.SIGKILL]


def test_group_terminate_reports_unkillable_process(monkeypatch):
    monkeypatch.setattr(supervisor_module.os, "killpg", lambda pgid, sig: None)

    async def wait_exit():
        await asyncio.sleep(10)

    assert asyncio.run(ProcessGroup(4242).terminate(wait_exit, grace_ms=20, kill_wait_ms=20)) is False
