"""Tests for TurnHandle cancellation and AgentMessage wire helpers."""
from __future__ import annotations

import asyncio

import pytest

from agentrelay.engine.backends.base import TurnEmitter
from agentrelay.engine.models import (
    PromptContent,
    StopReason,
    TextMessage,
    ToolCallMessage,
    ToolStatus,
    TurnCompleteMessage,
    join_prompt_content,
    message_from_dict,
    message_to_dict,
)
from agentrelay.engine.turn import TurnCancelled, TurnHandle


@pytest.mark.asyncio
async def test_cancel_runs_callbacks_once():
    handle = TurnHandle()
    calls = []
    handle.add_cancel_callback(lambda: calls.append("a"))
    handle.add_cancel_callback(lambda: 1 / 0)
    handle.add_cancel_callback(lambda: calls.append("c"))

    handle.cancel()
    handle.cancel()
    handle.add_cancel_callback(lambda: calls.append("late"))

    assert calls == ["a", "c", "late"]
    assert handle.cancelled is True


@pytest.mark.asyncio
async def test_removed_callback_is_not_run():
    handle = TurnHandle()
    calls = []

    def callback():
        calls.append(1)

    handle.add_cancel_callback(callback)
    handle.remove_cancel_callback(callback)
    handle.remove_cancel_callback(callback)
    handle.cancel()
    assert calls == []


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled():
    handle = TurnHandle()

    async def work():
        await asyncio.sleep(0)
        return 42

    assert await handle.guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_cancels_inner_task_on_turn_cancel():
    handle = TurnHandle()
    cleaned_up = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(30)
        finally:
            cleaned_up.set()

    asyncio.get_running_loop().call_later(0.05, handle.cancel)
    with pytest.raises(TurnCancelled):
        await handle.guard(slow())
    assert cleaned_up.is_set()

    with pytest.raises(TurnCancelled):
        await handle.guard(slow())


@pytest.mark.asyncio
async def test_wait_settled_times_out_until_marked():
    handle = TurnHandle()
    assert await handle.wait_settled(0.01) is False
    handle.mark_settled()
    assert await handle.wait_settled(0.01) is True
    assert handle.settled is True


def test_join_prompt_content_keeps_text_parts():
    parts = [PromptContent("one"), {"type": "image", "data": "..."}, {"type": "text", "text": "two"}, "three"]
    assert join_prompt_content(parts) == "one\ntwo\nthree"


def test_message_wire_form():
    call = ToolCallMessage(id="t1", name="file_edit", input={"path": "a.py"}, status=ToolStatus.FAILED)
    wire = message_to_dict(call)
    assert wire == {"type": "tool_call", "id": "t1", "name": "file_edit", "input": {"path": "a.py"}, "status": "failed"}
    assert message_from_dict(wire) == call

    done = message_from_dict({"type": "turn_complete", "stopReason": "cancelled"})
    assert done == TurnCompleteMessage(stop_reason=StopReason.CANCELLED)
    assert message_to_dict(done) == {"type": "turn_complete", "stopReason": "cancelled"}

    with pytest.raises(ValueError):
        message_from_dict({"type": "mystery"})


@pytest.mark.asyncio
async def test_drain_forwards_messages_appended_while_draining():
    pending = [TextMessage(text=str(i)) for i in range(3)]
    seen = []

    def on_update(message):
        seen.append(message.text)
        if message.text == "1":
            pending.append(TextMessage(text="late"))

    emit = TurnEmitter(on_update)
    await emit.drain(pending)

    assert seen == ["0", "1", "2", "late"]
    assert pending == []
    assert emit.count == 4
