"""Claude Agent SDK backend.

Wraps ``claude_agent_sdk.query()``. This is the backend that gates tool
use behind interactive approval: the SDK's ``can_use_tool`` hook is
turned into a ``PermissionRequest`` for the registered handler, and the
turn waits until ``respond_to_permission`` answers it.
"""
from __future__ import annotations

import asyncio
import importlib.util
import json
import logging
import uuid
from typing import Any, AsyncIterator

from ..config import fire_event
from ..errors import ConfigurationError, TransportError
from ..models import (
    MessageRole,
    PermissionMode,
    PermissionRequest,
    PermissionResponse,
    ReasoningMessage,
    Session,
    TextMessage,
    ToolCallMessage,
    ToolResultMessage,
    ToolStatus,
)
from ..turn import TurnHandle
from .base import Backend, BackendCapabilities, TurnEmitter

logger = logging.getLogger(__name__)


class ClaudeBackend(Backend):
    default_model = "claude-sonnet-4-5"

    def __init__(
        self,
        *,
        model: str | None = None,
        cli_path: str | None = None,
        allowed_tools: list[str] | None = None,
        permission_timeout: float = 300.0,
    ) -> None:
        super().__init__()
        if model:
            self.default_model = model
        self._cli_path = cli_path
        self._allowed_tools = allowed_tools or [
            "Read", "Write", "Edit", "Bash", "Glob", "Grep",
        ]
        self.permission_timeout = permission_timeout
        # request id -> (session id, future awaiting the user's answer)
        self._pending_permissions: dict[str, tuple[str, asyncio.Future]] = {}
        # our session id -> SDK session id, for resume on the next turn
        self._sdk_sessions: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "claude"

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(streams_text=True, streams_reasoning=True, permissions=True)

    def is_available(self) -> bool:
        return importlib.util.find_spec("claude_agent_sdk") is not None

    async def initialize(self) -> None:
        if not self.is_available():
            raise ConfigurationError(
                "claude-agent-sdk package", "Install it with: pip install claude-agent-sdk",
            )
        logger.info("claude backend ready model=%s", self.default_model)

    # ── Permissions ──

    def pending_permission_ids(self, session_id: str | None = None) -> list[str]:
        return [
            rid for rid, (sid, _) in self._pending_permissions.items()
            if session_id is None or sid == session_id
        ]

    async def respond_to_permission(
        self,
        session_id: str,
        request_id: str,
        response: PermissionResponse,
    ) -> None:
        entry = self._pending_permissions.get(request_id)
        if entry is None or entry[0] != session_id:
            logger.warning(
                "No pending permission request %s for session %s", request_id, session_id,
            )
            return
        future = entry[1]
        if not future.done():
            future.set_result(response)

    def _deny_pending(self, session_id: str, reason: str) -> None:
        for request_id in self.pending_permission_ids(session_id):
            _, future = self._pending_permissions[request_id]
            if not future.done():
                future.set_result(PermissionResponse(approved=False, message=reason))

    def _make_permission_hook(self, session: Session):
        async def can_use_tool(tool_name: str, tool_input: dict, context: object = None):
            from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

            if (
                session.config.permission_mode is PermissionMode.BYPASS
                or self._permission_handler is None
            ):
                return PermissionResultAllow()

            request = PermissionRequest(
                id=str(uuid.uuid4()),
                session_id=session.id,
                tool_name=tool_name,
                input=dict(tool_input or {}),
            )
            future: asyncio.Future = asyncio.get_running_loop().create_future()
            self._pending_permissions[request.id] = (session.id, future)
            logger.info(
                "Permission requested session=%s tool=%s request=%s",
                session.id[:8], tool_name, request.id[:8],
            )
            try:
                await fire_event(self._permission_handler, request)
                response = await asyncio.wait_for(future, timeout=self.permission_timeout)
            except asyncio.TimeoutError:
                response = PermissionResponse(approved=False, message="Permission request timed out")
            finally:
                self._pending_permissions.pop(request.id, None)

            if response.approved:
                return PermissionResultAllow()
            return PermissionResultDeny(message=response.message or "User denied tool call")

        return can_use_tool

    # ── Turns ──

    def _prompt_text(self, session: Session, user_text: str) -> str:
        """The prompt for this turn.

        Once the SDK has a session of its own, context lives there. A
        session restored from storage has no SDK session yet, so its
        earlier turns are inlined.
        """
        if session.id in self._sdk_sessions:
            return user_text
        earlier = [
            m for m in session.messages[:-1] if m.role is not MessageRole.SYSTEM
        ]
        if not earlier:
            return user_text
        transcript = "\n\n".join(f"{m.role.value}: {m.content}" for m in earlier)
        return f"Previous conversation:\n\n{transcript}\n\nuser: {user_text}"

    async def _run_turn(
        self,
        session: Session,
        user_text: str,
        handle: TurnHandle,
        emit: TurnEmitter,
    ) -> str | None:
        from claude_agent_sdk import ClaudeAgentOptions, query

        options_kwargs: dict[str, Any] = dict(
            system_prompt=session.messages[0].content if session.messages else "",
            allowed_tools=self._allowed_tools,
            permission_mode=session.config.permission_mode.value,
            cwd=session.config.cwd,
            model=session.model or self.default_model,
            can_use_tool=self._make_permission_hook(session),
        )
        if self._cli_path:
            options_kwargs["cli_path"] = self._cli_path
        resume = self._sdk_sessions.get(session.id)
        if resume:
            options_kwargs["resume"] = resume
        options = ClaudeAgentOptions(**options_kwargs)

        prompt_text = self._prompt_text(session, user_text)

        # can_use_tool needs a streaming prompt; a plain string closes stdin.
        async def _prompt_stream() -> AsyncIterator[dict]:
            yield {
                "type": "user",
                "message": {"role": "user", "content": prompt_text},
            }

        def _on_cancel() -> None:
            self._deny_pending(session.id, "Turn cancelled")

        handle.add_cancel_callback(_on_cancel)
        try:
            return await handle.guard(
                self._consume(session, query(prompt=_prompt_stream(), options=options), emit)
            )
        finally:
            handle.remove_cancel_callback(_on_cancel)

    async def _consume(
        self,
        session: Session,
        messages: AsyncIterator[Any],
        emit: TurnEmitter,
    ) -> str:
        text_parts: list[str] = []
        async for message in messages:
            content = getattr(message, "content", None)
            if isinstance(content, list):
                for block in content:
                    await self._emit_block(block, emit, text_parts)

            if hasattr(message, "result"):
                sdk_session = getattr(message, "session_id", None)
                if sdk_session:
                    self._sdk_sessions[session.id] = sdk_session
                if getattr(message, "is_error", False):
                    raise TransportError(
                        f"Claude turn failed: {message.result or 'unknown error'}"
                    )
        return "".join(text_parts)

    async def _emit_block(self, block: Any, emit: TurnEmitter, text_parts: list[str]) -> None:
        if hasattr(block, "thinking"):
            if block.thinking:
                await emit(ReasoningMessage(text=str(block.thinking)))
        elif hasattr(block, "text"):
            if block.text:
                text_parts.append(block.text)
                await emit(TextMessage(text=block.text))
        elif hasattr(block, "name") and hasattr(block, "input"):
            await emit(ToolCallMessage(
                id=str(getattr(block, "id", "")),
                name=block.name,
                input=block.input if isinstance(block.input, dict) else {"value": block.input},
                status=ToolStatus.IN_PROGRESS,
            ))
        elif hasattr(block, "tool_use_id"):
            await emit(ToolResultMessage(
                id=str(block.tool_use_id),
                output=_tool_result_text(getattr(block, "content", None)),
                status=ToolStatus.FAILED if getattr(block, "is_error", False) else ToolStatus.COMPLETED,
            ))

    async def _release(self) -> None:
        for request_id in list(self._pending_permissions):
            _, future = self._pending_permissions.pop(request_id)
            if not future.done():
                future.set_result(PermissionResponse(approved=False, message="Backend disconnected"))
        self._sdk_sessions.clear()


def _tool_result_text(content: Any) -> Any:
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(json.dumps(item, default=str))
        return "\n".join(parts)
    return content
