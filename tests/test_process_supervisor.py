"""Tests for ProcessSupervisor: output pumping, exit classification, kill escalation."""
from __future__ import annotations

import asyncio
import signal
import sys
import time
from pathlib import Path

import pytest

from agentrelay.engine.errors import ProcessSpawnError, TransportError
from agentrelay.engine.supervisor import (
    ExitOutcome,
    ProcessSupervisor,
    live_process_count,
)
from agentrelay.engine.turn import TurnHandle


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(0o755)
    return str(path)


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


# ── classify_exit ──


def test_classify_exit_success_and_cancel_codes():
    sup = ProcessSupervisor("true")
    assert sup.classify_exit(0, cancelled=False) is ExitOutcome.SUCCESS
    assert sup.classify_exit(0, cancelled=True) is ExitOutcome.SUCCESS
    for code in (130, 137, 143):
        assert sup.classify_exit(code, cancelled=True) is ExitOutcome.CANCELLED
    assert sup.classify_exit(-signal.SIGTERM, cancelled=True) is ExitOutcome.CANCELLED
    assert sup.classify_exit(-signal.SIGKILL, cancelled=True) is ExitOutcome.CANCELLED


def test_classify_exit_cancel_codes_without_cancel_are_errors():
    sup = ProcessSupervisor("true")
    with pytest.raises(TransportError) as exc_info:
        sup.classify_exit(137, cancelled=False)
    assert exc_info.value.exit_code == 137
    assert "code: 137" in str(exc_info.value)

    with pytest.raises(TransportError) as exc_info:
        sup.classify_exit(-signal.SIGKILL, cancelled=False)
    assert "SIGKILL" in str(exc_info.value)


def test_classify_exit_custom_cancel_codes():
    sup = ProcessSupervisor("true", cancel_exit_codes={1})
    assert sup.classify_exit(1, cancelled=True) is ExitOutcome.CANCELLED
    with pytest.raises(TransportError):
        sup.classify_exit(130, cancelled=True)


# ── Running processes ──


@pytest.mark.asyncio
async def test_run_pumps_stdout_and_stdin(tmp_path):
    cmd = _script(tmp_path, "echo.py", (
        "import sys\n"
        "data = sys.stdin.read()\n"
        "print('got:' + data)\n"
    ))
    chunks: list[str] = []
    sup = ProcessSupervisor(cmd, stdin_payload="hello")
    outcome = await sup.run(TurnHandle(), chunks.append)

    assert outcome is ExitOutcome.SUCCESS
    assert "".join(chunks) == "got:hello\n"
    assert live_process_count() == 0


@pytest.mark.asyncio
async def test_run_nonzero_exit_raises_with_stderr_tail(tmp_path):
    cmd = _script(tmp_path, "fail.py", (
        "import sys\n"
        "sys.stderr.write('boom: bad things\\n')\n"
        "sys.exit(3)\n"
    ))
    errors: list[str] = []
    sup = ProcessSupervisor(cmd)
    with pytest.raises(TransportError) as exc_info:
        await sup.run(TurnHandle(), lambda _: None, errors.append)

    assert exc_info.value.exit_code == 3
    assert "boom: bad things" in str(exc_info.value)
    assert "boom" in "".join(errors)


@pytest.mark.asyncio
async def test_run_missing_binary_raises_spawn_error(tmp_path):
    sup = ProcessSupervisor(
        str(tmp_path / "no-such-agent"), install_hint="the agent CLI",
    )
    with pytest.raises(ProcessSpawnError) as exc_info:
        await sup.run(TurnHandle(), lambda _: None)
    assert "the agent CLI" in str(exc_info.value)


@pytest.mark.asyncio
async def test_cancel_with_cooperative_exit_code_is_cancelled(tmp_path):
    """A CLI that traps SIGTERM and exits 137 counts as cancelled, not failed."""
    cmd = _script(tmp_path, "trap.py", (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, lambda *a: sys.exit(137))\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    ))
    out: list[str] = []
    handle = TurnHandle()
    sup = ProcessSupervisor(cmd, grace_period=2.0, kill_timeout=2.0)
    task = asyncio.ensure_future(sup.run(handle, out.append))
    await _wait_for(lambda: "ready" in "".join(out))

    handle.cancel()
    outcome = await asyncio.wait_for(task, timeout=5.0)
    assert outcome is ExitOutcome.CANCELLED
    assert sup.process.returncode == 137


@pytest.mark.asyncio
async def test_cancel_escalates_to_sigkill_when_sigterm_ignored(tmp_path):
    """A child ignoring SIGTERM is killed within grace + kill timeout."""
    cmd = _script(tmp_path, "stubborn.py", (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    ))
    out: list[str] = []
    handle = TurnHandle()
    sup = ProcessSupervisor(cmd, grace_period=0.5, kill_timeout=2.0)
    task = asyncio.ensure_future(sup.run(handle, out.append))
    await _wait_for(lambda: "ready" in "".join(out))

    started = time.monotonic()
    handle.cancel()
    outcome = await asyncio.wait_for(task, timeout=5.0)
    elapsed = time.monotonic() - started

    assert outcome is ExitOutcome.CANCELLED
    assert sup.process.returncode == -signal.SIGKILL
    assert elapsed < 0.5 + 2.0 + 0.5
    assert live_process_count() == 0


@pytest.mark.asyncio
async def test_cancel_before_spawn_finishes_still_kills(tmp_path):
    cmd = _script(tmp_path, "sleepy.py", "import time\ntime.sleep(30)\n")
    handle = TurnHandle()
    handle.cancel()
    sup = ProcessSupervisor(cmd, grace_period=0.5)
    outcome = await asyncio.wait_for(sup.run(handle, lambda _: None), timeout=5.0)
    assert outcome is ExitOutcome.CANCELLED


@pytest.mark.asyncio
async def test_async_stdout_callback_is_awaited(tmp_path):
    cmd = _script(tmp_path, "lines.py", "print('a')\nprint('b')\n")
    seen: list[str] = []

    async def on_stdout(chunk: str) -> None:
        await asyncio.sleep(0)
        seen.append(chunk)

    outcome = await ProcessSupervisor(cmd).run(TurnHandle(), on_stdout)
    assert outcome is ExitOutcome.SUCCESS
    assert "".join(seen) == "a\nb\n"
