"""Tests for the CLI backends (cursor-agent, aider) using stub executables."""
from __future__ import annotations

import asyncio
import json
import sys
import time
from pathlib import Path

import pytest

from agentrelay.engine.errors import ConfigurationError, ProcessSpawnError, TransportError
from agentrelay.engine.models import (
    ErrorMessage,
    MessageRole,
    SessionConfig,
    StopReason,
    TextMessage,
    ToolCallMessage,
    TurnCompleteMessage,
)
from agentrelay.engine.backends.aider import MESSAGE_ARG_LIMIT, AiderBackend
from agentrelay.engine.backends.cursor import CursorBackend


def _stub(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(f"#!{sys.executable}\nimport json, os, signal, sys, time\n{body}")
    path.chmod(0o755)
    return str(path)


def _emit_line(record: dict) -> str:
    return f"print(json.dumps({record!r}), flush=True)\n"


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def _types(events) -> list[str]:
    return [e.type for e in events]


# ── Cursor ──


CURSOR_OK = (
    "if sys.argv[1:] == ['--version']:\n"
    "    print('cursor-agent 1.0.0')\n"
    "    sys.exit(0)\n"
    + _emit_line({"type": "system", "model": "gpt-5"})
    + "print(json.dumps({'type': 'assistant', 'content': 'echo: ' + sys.argv[-1]}), flush=True)\n"
    + "print(json.dumps({'type': 'assistant', 'content': ' key=' + os.environ.get('CURSOR_API_KEY', '')}), flush=True)\n"
    + _emit_line({"type": "tool_call", "subtype": "started", "id": "t1", "name": "read"})
    + _emit_line({"type": "tool_call", "subtype": "completed", "id": "t1", "output": "ok"})
    + _emit_line({"type": "result", "stop_reason": "end_turn"})
)


@pytest.mark.asyncio
async def test_cursor_turn_parses_ndjson_and_records_history(tmp_path):
    cmd = _stub(tmp_path, "cursor-agent", CURSOR_OK)
    backend = CursorBackend(command=cmd, api_key="cur-key")
    await backend.initialize()
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    await backend.prompt(session_id, ["hello"], events.append)

    assert _types(events) == ["text", "text", "tool_call", "tool_result", "turn_complete"]
    assert events[0] == TextMessage(text="echo: hello")
    assert events[1] == TextMessage(text=" key=cur-key")
    assert events[-1] == TurnCompleteMessage(stop_reason=StopReason.END_TURN)
    history = backend.get_session(session_id).messages
    assert history[-1].role is MessageRole.ASSISTANT
    assert history[-1].content == "echo: hello key=cur-key"


@pytest.mark.asyncio
async def test_cursor_build_args():
    backend = CursorBackend(command="cursor-agent", api_key="k", model="gpt-5")
    session_id = await backend.new_session(SessionConfig(cwd="."))
    args = backend.build_args(backend.get_session(session_id), "do it")

    assert args[:4] == ["-p", "--output-format", "stream-json", "--stream-partial-output"]
    assert "--force" in args
    assert args[-3:] == ["--model", "gpt-5", "do it"]

    backend.auto_confirm = False
    assert "--force" not in backend.build_args(backend.get_session(session_id), "x")


@pytest.mark.asyncio
async def test_cursor_without_key_fails_initialize(tmp_path, monkeypatch):
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    backend = CursorBackend(command=_stub(tmp_path, "cursor-agent", CURSOR_OK))
    with pytest.raises(ConfigurationError) as exc_info:
        await backend.initialize()
    assert "CURSOR_API_KEY" in str(exc_info.value)


@pytest.mark.asyncio
async def test_cursor_cancel_with_exit_137_is_cancelled_only(tmp_path):
    cmd = _stub(tmp_path, "cursor-agent", (
        "signal.signal(signal.SIGTERM, lambda *a: sys.exit(137))\n"
        + _emit_line({"type": "assistant", "content": "working"})
        + "time.sleep(30)\n"
    ))
    backend = CursorBackend(command=cmd, api_key="k", grace_period=2.0, kill_timeout=2.0)
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    task = asyncio.ensure_future(backend.prompt(session_id, ["go"], events.append))
    await _wait_for(lambda: events)

    await backend.cancel_prompt(session_id)
    await asyncio.wait_for(task, timeout=4.5)

    assert _types(events) == ["text", "turn_complete"]
    assert events[-1].stop_reason is StopReason.CANCELLED
    assert not [e for e in events if isinstance(e, ErrorMessage)]
    assert backend.get_session(session_id).messages[-1].role is MessageRole.USER


@pytest.mark.asyncio
async def test_cursor_exit_1_reports_one_error_then_raises(tmp_path):
    cmd = _stub(tmp_path, "cursor-agent", (
        _emit_line({"type": "assistant", "content": "partial"})
        + "sys.stderr.write('fatal: not authenticated\\n')\n"
        + "sys.exit(1)\n"
    ))
    backend = CursorBackend(command=cmd, api_key="k")
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    with pytest.raises(TransportError) as exc_info:
        await backend.prompt(session_id, ["go"], events.append)

    assert exc_info.value.exit_code == 1
    assert _types(events) == ["text", "error", "turn_complete"]
    assert "not authenticated" in events[1].message
    assert events[-1].stop_reason is StopReason.ERROR


@pytest.mark.asyncio
async def test_cursor_missing_binary_is_spawn_error(tmp_path):
    backend = CursorBackend(command=str(tmp_path / "missing-cursor"), api_key="k")
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    with pytest.raises(ProcessSpawnError):
        await backend.prompt(session_id, ["go"], events.append)
    assert _types(events) == ["error", "turn_complete"]


@pytest.mark.asyncio
async def test_cursor_ignoring_sigterm_settles_within_kill_window(tmp_path):
    cmd = _stub(tmp_path, "cursor-agent", (
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        + _emit_line({"type": "assistant", "content": "stubborn"})
        + "time.sleep(60)\n"
    ))
    backend = CursorBackend(command=cmd, api_key="k", grace_period=2.0, kill_timeout=2.0)
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    task = asyncio.ensure_future(backend.prompt(session_id, ["go"], events.append))
    await _wait_for(lambda: events)

    started = time.monotonic()
    await backend.cancel_prompt(session_id)
    await asyncio.wait_for(task, timeout=4.5)

    assert time.monotonic() - started < 4.5
    assert events[-1] == TurnCompleteMessage(stop_reason=StopReason.CANCELLED)


# ── Aider ──


AIDER_OK = (
    "if sys.argv[1:] == ['--version']:\n"
    "    print('aider 0.80.0')\n"
    "    sys.exit(0)\n"
    "args = sys.argv[1:]\n"
    "if '--message-file' in args:\n"
    "    path = args[args.index('--message-file') + 1]\n"
    "    print('message file ' + path + ' chars=' + str(len(open(path).read())))\n"
    "print('argv: ' + ' '.join(args))\n"
    "print('key set: ' + str(bool(os.environ.get('OPENROUTER_API_KEY'))))\n"
    "print('Added app.py to the chat')\n"
    "print('<<<<<<< SEARCH')\n"
    "print('x = 1')\n"
    "print('=======')\n"
    "print('x = 2')\n"
    "print('>>>>>>> REPLACE')\n"
    "print('Applied edit to app.py')\n"
)


@pytest.mark.asyncio
async def test_aider_turn_classifies_terminal_output(tmp_path):
    cmd = _stub(tmp_path, "aider", AIDER_OK)
    backend = AiderBackend(command=cmd, openrouter_api_key="sk-or-secret")
    await backend.initialize()
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    await backend.prompt(session_id, ["rename x"], events.append)

    names = [e.name for e in events if isinstance(e, ToolCallMessage)]
    assert names == ["add_to_chat", "file_edit", "apply_edit"]
    text = "".join(e.text for e in events if isinstance(e, TextMessage))
    assert "--message rename x" in text
    assert "--yes-always" in text
    assert "--no-auto-commits" in text
    assert "sk-or-secret" not in text
    assert "key set: True" in text
    assert events[-1] == TurnCompleteMessage(stop_reason=StopReason.END_TURN)
    assert "Applied edit to app.py" in backend.get_session(session_id).messages[-1].content


@pytest.mark.asyncio
async def test_aider_long_message_goes_through_temp_file(tmp_path):
    cmd = _stub(tmp_path, "aider", AIDER_OK)
    backend = AiderBackend(command=cmd)
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    long_message = "y" * (MESSAGE_ARG_LIMIT + 10)
    await backend.prompt(session_id, [long_message], events.append)

    text = "".join(e.text for e in events if isinstance(e, TextMessage))
    line = next(l for l in text.splitlines() if l.startswith("message file "))
    path = line.split()[2]
    assert line.endswith(f"chars={len(long_message)}")
    assert long_message not in text
    assert not Path(path).exists()


@pytest.mark.asyncio
async def test_aider_failure_includes_last_error_line(tmp_path):
    cmd = _stub(tmp_path, "aider", (
        "print('Error: model openrouter/nope not found', flush=True)\n"
        "sys.exit(2)\n"
    ))
    backend = AiderBackend(command=cmd)
    session_id = await backend.new_session(SessionConfig(cwd=str(tmp_path)))
    events = []
    with pytest.raises(TransportError) as exc_info:
        await backend.prompt(session_id, ["go"], events.append)

    assert "model openrouter/nope not found" in str(exc_info.value)
    assert exc_info.value.exit_code == 2
    assert events[-1].stop_reason is StopReason.ERROR
    assert _types(events)[-2] == "error"


@pytest.mark.asyncio
async def test_aider_version_check_tolerates_nonzero_exit(tmp_path):
    cmd = _stub(tmp_path, "aider", "print('aider v0.1 (dev)')\nsys.exit(1)\n")
    await AiderBackend(command=cmd).initialize()

    bad = _stub(tmp_path, "other", "print('nothing useful')\nsys.exit(1)\n")
    with pytest.raises(ConfigurationError):
        await AiderBackend(command=bad).initialize()
