"""Core data models for the relay engine.

Session bookkeeping types and the normalized ``AgentMessage`` variants
every backend emits during a turn. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

if TYPE_CHECKING:
    from .turn import TurnHandle


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class PermissionMode(str, Enum):
    """Tool approval policy of a session."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"


class ToolStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StopReason(str, Enum):
    """Why a turn ended. Exactly one per turn, carried by turn_complete."""
    END_TURN = "end_turn"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class ChatMessage:
    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class PromptContent:
    """One part of a multi-part user prompt."""
    text: str
    type: str = "text"


def join_prompt_content(parts: list[PromptContent | dict | str]) -> str:
    """Join the text parts of a prompt into one user message."""
    texts: list[str] = []
    for part in parts:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, PromptContent):
            if part.type == "text":
                texts.append(part.text)
        elif isinstance(part, dict) and part.get("type", "text") == "text":
            texts.append(str(part.get("text", "")))
    return "\n".join(texts)


@dataclass
class SessionConfig:
    cwd: str
    model: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    system_prompt: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        mode = data.get("permissionMode") or data.get("permission_mode")
        return cls(
            cwd=str(data.get("cwd") or "."),
            model=data.get("model") or None,
            permission_mode=PermissionMode(mode) if mode else PermissionMode.DEFAULT,
            system_prompt=data.get("systemPrompt") or data.get("system_prompt"),
        )


@dataclass
class Session:
    """One conversation with one backend vendor.

    ``messages`` is replayed as conversation context on every turn, so
    insertion order matters. ``turn`` is only set while a prompt is in
    flight.
    """
    id: str
    config: SessionConfig
    messages: list[ChatMessage] = field(default_factory=list)
    turn: TurnHandle | None = field(default=None, repr=False)
    model: str | None = None


# ── Normalized agent messages ──


@dataclass
class TextMessage:
    text: str
    type: str = field(default="text", init=False)


@dataclass
class ReasoningMessage:
    text: str
    type: str = field(default="reasoning", init=False)


@dataclass
class ToolCallMessage:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.IN_PROGRESS
    type: str = field(default="tool_call", init=False)


@dataclass
class ToolResultMessage:
    id: str
    output: Any = None
    status: ToolStatus = ToolStatus.COMPLETED
    type: str = field(default="tool_result", init=False)


@dataclass
class ErrorMessage:
    message: str
    type: str = field(default="error", init=False)


@dataclass
class TurnCompleteMessage:
    """Terminal message of a turn, emitted exactly once.

    ``stop_reason`` is ``end_turn`` for a finished turn, ``cancelled`` when
    the turn was aborted, and ``error`` when it failed; an ``error`` stop
    always follows an ``error`` message carrying the failure text.
    """
    stop_reason: StopReason = StopReason.END_TURN
    type: str = field(default="turn_complete", init=False)


AgentMessage = Union[
    TextMessage,
    ReasoningMessage,
    ToolCallMessage,
    ToolResultMessage,
    ErrorMessage,
    TurnCompleteMessage,
]

# Called once per AgentMessage; may be a plain function or a coroutine.
UpdateCallback = Callable[[AgentMessage], Union[Awaitable[None], None]]


def message_to_dict(message: AgentMessage) -> dict[str, Any]:
    """Serialize an AgentMessage to its camelCase wire form."""
    if isinstance(message, (TextMessage, ReasoningMessage)):
        return {"type": message.type, "text": message.text}
    if isinstance(message, ToolCallMessage):
        return {
            "type": message.type,
            "id": message.id,
            "name": message.name,
            "input": message.input,
            "status": message.status.value,
        }
    if isinstance(message, ToolResultMessage):
        return {
            "type": message.type,
            "id": message.id,
            "output": message.output,
            "status": message.status.value,
        }
    if isinstance(message, ErrorMessage):
        return {"type": message.type, "message": message.message}
    return {"type": message.type, "stopReason": message.stop_reason.value}


def message_from_dict(data: dict[str, Any]) -> AgentMessage:
    """Rebuild an AgentMessage from its wire dict. Raises ValueError."""
    kind = data.get("type")
    if kind == "text":
        return TextMessage(text=data.get("text", ""))
    if kind == "reasoning":
        return ReasoningMessage(text=data.get("text", ""))
    if kind == "tool_call":
        return ToolCallMessage(
            id=data["id"],
            name=data.get("name", ""),
            input=data.get("input") or {},
            status=ToolStatus(data.get("status", "in_progress")),
        )
    if kind == "tool_result":
        return ToolResultMessage(
            id=data["id"],
            output=data.get("output"),
            status=ToolStatus(data.get("status", "completed")),
        )
    if kind == "error":
        return ErrorMessage(message=data.get("message", ""))
    if kind == "turn_complete":
        return TurnCompleteMessage(
            stop_reason=StopReason(data.get("stopReason", "end_turn"))
        )
    raise ValueError(f"Unknown agent message type: {kind!r}")


# ── Permission capability ──


@dataclass
class PermissionRequest:
    id: str
    session_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "toolName": self.tool_name,
            "input": self.input,
        }


@dataclass
class PermissionResponse:
    approved: bool
    message: str | None = None


PermissionHandler = Callable[[PermissionRequest], Union[Awaitable[None], None]]
