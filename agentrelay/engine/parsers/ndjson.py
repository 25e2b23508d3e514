"""Parser for newline-delimited JSON agent CLI output.

Used for ``cursor-agent --output-format stream-json``. Each line is one
JSON record, dispatched on its ``type`` field. The record stream carries
its own ``result`` marker, but the terminal ``turn_complete`` is always
left to the backend so every turn gets exactly one.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ..models import (
    ErrorMessage,
    ReasoningMessage,
    TextMessage,
    ToolCallMessage,
    ToolResultMessage,
    ToolStatus,
)
from .base import MessageSink, StreamParser

logger = logging.getLogger(__name__)


class NdjsonStreamParser(StreamParser):
    def __init__(self, on_message: MessageSink, *, id_prefix: str = "cursor-tool") -> None:
        super().__init__(on_message)
        self._id_prefix = id_prefix
        self._tool_counter = 0
        self._pending: dict[str, str] = {}
        self.model: str | None = None
        self.stop_reason: str | None = None
        self.text_parts: list[str] = []

    @property
    def pending_tool_calls(self) -> dict[str, str]:
        """Open tool call ids mapped to their tool names."""
        return dict(self._pending)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def _process_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Failed to parse stream-json line: %.200s", line)
            return
        if not isinstance(event, dict):
            logger.debug("Ignoring non-object stream-json record: %.200s", line)
            return

        handler = self._HANDLERS.get(event.get("type", ""))
        if handler is None:
            logger.debug("Unknown stream-json event type: %s", event.get("type"))
            return
        handler(self, event)

    # ── Event handlers ──

    def _on_system(self, event: dict[str, Any]) -> None:
        self.model = event.get("model") or self.model
        logger.debug("cursor system event model=%s", self.model)

    def _on_assistant(self, event: dict[str, Any]) -> None:
        content = event.get("content")
        if content is None and isinstance(event.get("message"), dict):
            content = event["message"].get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        for block in content or []:
            if not isinstance(block, dict) or block.get("type") != "text":
                continue
            text = block.get("text")
            if text:
                self.text_parts.append(text)
                self.emit(TextMessage(text=text))

    def _on_thinking(self, event: dict[str, Any]) -> None:
        text = event.get("text")
        if text:
            self.emit(ReasoningMessage(text=text))

    def _on_tool_call(self, event: dict[str, Any]) -> None:
        subtype = event.get("subtype")
        tool_id = event.get("id") or event.get("call_id")

        if subtype == "started":
            if not tool_id:
                self._tool_counter += 1
                tool_id = f"{self._id_prefix}-{self._tool_counter}"
            name = event.get("name") or _tool_name(event.get("tool_call")) or "unknown"
            self._pending[tool_id] = name
            self.emit(ToolCallMessage(
                id=tool_id,
                name=name,
                input=event.get("input") or event.get("tool_call") or {},
                status=ToolStatus.IN_PROGRESS,
            ))
            return

        if subtype in ("completed", "failed"):
            if not tool_id:
                # Results without an id belong to the most recent open call.
                tool_id = next(reversed(self._pending), None) if self._pending else None
            if not tool_id:
                logger.debug("tool_call %s without an open call, dropped", subtype)
                return
            self._pending.pop(tool_id, None)
            if subtype == "completed":
                self.emit(ToolResultMessage(
                    id=tool_id,
                    output=event.get("output"),
                    status=ToolStatus.COMPLETED,
                ))
            else:
                self.emit(ToolResultMessage(
                    id=tool_id,
                    output=event.get("error") or event.get("output"),
                    status=ToolStatus.FAILED,
                ))
            return

        logger.debug("Unknown tool_call subtype: %s", subtype)

    def _on_result(self, event: dict[str, Any]) -> None:
        self._fail_pending("Tool call interrupted")
        self.stop_reason = event.get("stop_reason") or "end_turn"

    def _on_error(self, event: dict[str, Any]) -> None:
        message = event.get("message") or event.get("error") or "Unknown error"
        self.emit(ErrorMessage(message=str(message)))

    def _fail_pending(self, reason: str) -> None:
        for tool_id in list(self._pending):
            del self._pending[tool_id]
            self.emit(ToolResultMessage(
                id=tool_id, output=reason, status=ToolStatus.FAILED,
            ))

    def _flush(self) -> None:
        if self._pending:
            self._fail_pending("Tool call interrupted")

    _HANDLERS = {
        "system": _on_system,
        "assistant": _on_assistant,
        "thinking": _on_thinking,
        "tool_call": _on_tool_call,
        "result": _on_result,
        "error": _on_error,
    }


def _tool_name(tool_call: Any) -> str | None:
    """Cursor nests the call as ``{"readToolCall": {...}}``; use that key."""
    if isinstance(tool_call, dict) and len(tool_call) == 1:
        return next(iter(tool_call))
    return None
