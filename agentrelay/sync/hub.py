"""Binds backend turns to the SyncEngine.

The hub owns the background task for each running turn. Agent output is
stored as messages through the SyncEngine, so every subscriber sees a
turn the same way whether it is watching live or refetching later.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from ..engine.backends import AgentRegistry, Backend
from ..engine.errors import RelayError, SessionBusyError, SessionNotFoundError
from ..engine.models import (
    AgentMessage,
    ChatMessage,
    MessageRole,
    PermissionMode,
    PermissionRequest,
    PermissionResponse,
    PromptContent,
    ReasoningMessage,
    SessionConfig,
    StopReason,
    TextMessage,
    TurnCompleteMessage,
    message_to_dict,
)
from .engine import SyncEngine
from .records import MessageRecord, SessionRecord

logger = logging.getLogger(__name__)

USER_ROLE = "user"
AGENT_ROLE = "agent"
HISTORY_RESTORE_LIMIT = 200
# Stop reasons whose agent text is kept when history is rebuilt.
COMPLETED_STOP_REASONS = frozenset({StopReason.END_TURN.value})
TURN_ENDED_MESSAGE = "Turn ended"


def user_content(text: str, turn_id: str | None = None) -> dict[str, Any]:
    content: dict[str, Any] = {"role": USER_ROLE, "content": {"type": "text", "text": text}}
    if turn_id:
        content["turnId"] = turn_id
    return content


def agent_content(payload: dict[str, Any], turn_id: str | None = None) -> dict[str, Any]:
    content: dict[str, Any] = {"role": AGENT_ROLE, "content": payload}
    if turn_id:
        content["turnId"] = turn_id
    return content


def _turn_outcomes(messages: list[MessageRecord]) -> dict[str, str]:
    outcomes: dict[str, str] = {}
    for record in messages:
        content = record.content if isinstance(record.content, dict) else {}
        body = content.get("content") if isinstance(content.get("content"), dict) else {}
        turn_id = content.get("turnId")
        if turn_id and body.get("type") == "turn_complete":
            outcomes[turn_id] = str(body.get("stopReason", ""))
    return outcomes


def history_from_messages(messages: list[MessageRecord]) -> list[ChatMessage]:
    """Rebuild user/assistant chat history from stored messages.

    Consecutive agent text messages collapse into one assistant entry.
    Agent text of a turn that was cancelled, failed or never completed
    is left out; messages without a turn id are kept as they are.
    """
    outcomes = _turn_outcomes(messages)
    history: list[ChatMessage] = []
    assistant: list[str] = []

    def close_assistant() -> None:
        if assistant:
            history.append(ChatMessage(MessageRole.ASSISTANT, "".join(assistant)))
            assistant.clear()

    for record in messages:
        content = record.content if isinstance(record.content, dict) else {}
        body = content.get("content") if isinstance(content.get("content"), dict) else {}
        if body.get("type") != "text":
            continue
        if content.get("role") == USER_ROLE:
            close_assistant()
            history.append(ChatMessage(MessageRole.USER, str(body.get("text", ""))))
        elif content.get("role") == AGENT_ROLE:
            turn_id = content.get("turnId")
            if turn_id and outcomes.get(turn_id) not in COMPLETED_STOP_REASONS:
                continue
            assistant.append(str(body.get("text", "")))
    close_assistant()
    return history


class TurnRecorder:
    """on_update callback storing one turn's output as agent messages.

    Text and reasoning deltas are buffered and stored at tool or turn
    boundaries so a streamed answer becomes one message, not hundreds.
    Every stored message carries the turn id, and the turn's
    ``turn_complete`` is stored last so its outcome survives a restart.
    """

    def __init__(self, engine: SyncEngine, session_id: str, turn_id: str | None = None) -> None:
        self._engine = engine
        self._session_id = session_id
        self.turn_id = turn_id or str(uuid.uuid4())
        # Called once the turn has ended, before its turn_complete is stored.
        self.on_complete: Callable[[], None] | None = None
        self._text: list[str] = []
        self._reasoning: list[str] = []
        self.stop_reason: str | None = None

    def __call__(self, message: AgentMessage) -> None:
        if isinstance(message, TextMessage):
            self._text.append(message.text)
            return
        if isinstance(message, ReasoningMessage):
            self._reasoning.append(message.text)
            return
        self.flush()
        if isinstance(message, TurnCompleteMessage):
            self.stop_reason = message.stop_reason.value
            if self.on_complete is not None:
                self.on_complete()
        self.store(message_to_dict(message))

    def flush(self) -> None:
        if self._reasoning:
            self.store({"type": "reasoning", "text": "".join(self._reasoning)})
            self._reasoning.clear()
        if self._text:
            self.store({"type": "text", "text": "".join(self._text)})
            self._text.clear()

    def store(self, payload: dict[str, Any]) -> None:
        # The session may have been removed mid-turn.
        if self._engine.get_session(self._session_id) is None:
            return
        self._engine.add_message(self._session_id, agent_content(payload, self.turn_id))


class SessionHub:
    def __init__(self, registry: AgentRegistry, engine: SyncEngine, *, namespace: str = "default") -> None:
        self.registry = registry
        self.engine = engine
        self.namespace = namespace
        self._tasks: dict[str, asyncio.Task] = {}
        self._initialized: set[str] = set()
        self._init_lock = asyncio.Lock()
        # request id -> session id
        self._pending_permissions: dict[str, str] = {}
        # session id -> id of its running turn
        self._turn_ids: dict[str, str] = {}

    async def _ensure_backend(self, agent: str) -> Backend:
        backend = self.registry.get(agent)
        async with self._init_lock:
            if agent not in self._initialized:
                await backend.initialize()
                if backend.supports_permissions:
                    backend.on_permission_request(self._on_permission_request)
                self._initialized.add(agent)
        return backend

    def _require(self, session_id: str) -> SessionRecord:
        record = self.engine.get_session(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def is_busy(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    # ── Sessions ──

    async def create_session(
        self,
        agent: str,
        config: SessionConfig,
        *,
        namespace: str | None = None,
        machine_id: str | None = None,
        name: str | None = None,
    ) -> SessionRecord:
        backend = await self._ensure_backend(agent)
        session_id = str(uuid.uuid4())
        await backend.new_session(config, session_id=session_id)
        self.registry.bind_session(session_id, agent)
        record = self.engine.create_session(
            session_id=session_id,
            namespace=namespace or self.namespace,
            machine_id=machine_id,
            metadata={
                "agent": agent,
                "path": config.cwd,
                "name": name or agent,
                "model": config.model or backend.default_model,
            },
            permission_mode=config.permission_mode.value,
            model_mode=config.model,
        )
        logger.info("Hub session created id=%s agent=%s", session_id[:8], agent)
        return record

    async def resume(self, session_id: str) -> Backend:
        """Return a live backend for a stored session, restoring history if needed."""
        backend = self.registry.resolve(session_id)
        if backend is not None and backend.has_session(session_id):
            return backend

        record = self._require(session_id)
        metadata = record.metadata or {}
        agent = metadata.get("agent")
        if not agent:
            raise SessionNotFoundError(session_id)
        backend = await self._ensure_backend(agent)
        config = SessionConfig(
            cwd=metadata.get("path") or ".",
            model=record.model_mode or metadata.get("model"),
            permission_mode=PermissionMode(record.permission_mode or PermissionMode.DEFAULT.value),
        )
        await backend.new_session(config, session_id=session_id)
        self.registry.bind_session(session_id, agent)
        stored = self.engine.store.get_messages(session_id, HISTORY_RESTORE_LIMIT)
        await backend.restore_history(session_id, history_from_messages(stored))
        logger.info("Hub session resumed id=%s agent=%s", session_id[:8], agent)
        return backend

    async def remove_session(self, session_id: str) -> None:
        self._require(session_id)
        backend = self.registry.resolve(session_id)
        if backend is not None:
            await backend.close_session(session_id)
        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=backend.disconnect_timeout if backend else 5.0)
        self.registry.unbind_session(session_id)
        self._pending_permissions = {
            rid: sid for rid, sid in self._pending_permissions.items() if sid != session_id
        }
        self.engine.delete_session(session_id)

    def set_permission_mode(self, session_id: str, mode: str) -> SessionRecord:
        mode = PermissionMode(mode).value
        self._require(session_id)
        backend = self.registry.resolve(session_id)
        if backend is not None and backend.has_session(session_id):
            backend.set_permission_mode(session_id, PermissionMode(mode))
        return self.engine.set_permission_mode(session_id, mode)

    # ── Turns ──

    async def send_message(self, session_id: str, text: str, local_id: str | None = None) -> MessageRecord:
        """Record the user message and start the turn in the background."""
        self._require(session_id)
        if self.is_busy(session_id):
            raise SessionBusyError(session_id)
        backend = await self.resume(session_id)
        turn_id = str(uuid.uuid4())
        self._turn_ids[session_id] = turn_id
        message = self.engine.add_message(session_id, user_content(text, turn_id), local_id)
        self.engine.set_thinking(session_id, True)
        task = asyncio.ensure_future(self._run_turn(backend, session_id, text, turn_id))
        self._tasks[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget_task(sid, t))
        return message

    def _forget_task(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    async def _run_turn(self, backend: Backend, session_id: str, text: str, turn_id: str) -> None:
        recorder = TurnRecorder(self.engine, session_id, turn_id)
        recorder.on_complete = lambda: self._expire_permissions(session_id, recorder)
        try:
            await backend.prompt(session_id, [PromptContent(text)], recorder)
        except RelayError as exc:
            # Already stored as an error message by the recorder.
            logger.warning("Turn failed session=%s: %s", session_id[:8], exc)
        except Exception:
            logger.exception("Turn crashed session=%s", session_id[:8])
        finally:
            recorder.flush()
            self._expire_permissions(session_id, recorder)
            if self._turn_ids.get(session_id) == turn_id:
                del self._turn_ids[session_id]
            self.engine.set_thinking(session_id, False)
        logger.info("Turn finished session=%s stop=%s", session_id[:8], recorder.stop_reason)

    async def abort(self, session_id: str) -> None:
        self._require(session_id)
        backend = self.registry.resolve(session_id)
        if backend is not None:
            await backend.cancel_prompt(session_id)

    async def wait_idle(self, session_id: str, timeout: float | None = None) -> bool:
        """Wait for the session's running turn, if any. Returns False on timeout."""
        task = self._tasks.get(session_id)
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    # ── Permissions ──

    async def _on_permission_request(self, request: PermissionRequest) -> None:
        self._pending_permissions[request.id] = request.session_id
        if self.engine.get_session(request.session_id) is None:
            return
        self.engine.add_message(
            request.session_id,
            agent_content(
                {"type": "permission_request", **request.to_dict()},
                self._turn_ids.get(request.session_id),
            ),
        )

    def pending_permissions(self, session_id: str) -> list[str]:
        return [rid for rid, sid in self._pending_permissions.items() if sid == session_id]

    def _expire_permissions(self, session_id: str, recorder: TurnRecorder) -> None:
        """Deny requests still open when their turn ends so no prompt dangles."""
        for request_id in self.pending_permissions(session_id):
            del self._pending_permissions[request_id]
            recorder.store({
                "type": "permission_response",
                "id": request_id,
                "approved": False,
                "message": TURN_ENDED_MESSAGE,
            })

    async def respond_to_permission(
        self,
        session_id: str,
        request_id: str,
        approved: bool,
        message: str | None = None,
    ) -> None:
        self._require(session_id)
        backend = self.registry.resolve(session_id)
        if backend is None:
            raise SessionNotFoundError(session_id)
        self._pending_permissions.pop(request_id, None)
        await backend.respond_to_permission(
            session_id, request_id, PermissionResponse(approved=approved, message=message),
        )
        self.engine.add_message(
            session_id,
            agent_content({
                "type": "permission_response",
                "id": request_id,
                "approved": approved,
                "message": message,
            }, self._turn_ids.get(session_id)),
        )

    # ── Teardown ──

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for session_id in list(self._tasks):
            backend = self.registry.resolve(session_id)
            if backend is not None:
                await backend.cancel_prompt(session_id)
        if tasks:
            await asyncio.wait(tasks, timeout=10.0)
        await self.registry.shutdown_all()
        self._tasks.clear()
        self._initialized.clear()
        logger.info("Hub shut down (%d turns cancelled)", len(tasks))
