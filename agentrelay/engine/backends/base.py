"""Abstract base for agent backends.

Each backend wraps one vendor's agent runtime (HTTP chat completions,
a CLI that streams JSON, a CLI that prints terminal text, or an SDK) and
exposes the same session contract. ``prompt()`` is a template method:
the shared bookkeeping lives here, the vendor transport lives in
``_run_turn()``.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from ..config import fire_event
from ..errors import RelayError, SessionNotFoundError, TransportError
from ..models import (
    AgentMessage,
    ChatMessage,
    ErrorMessage,
    MessageRole,
    PermissionHandler,
    PermissionMode,
    PermissionResponse,
    PromptContent,
    Session,
    SessionConfig,
    StopReason,
    TurnCompleteMessage,
    UpdateCallback,
    join_prompt_content,
)
from ..turn import TurnCancelled, TurnHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendCapabilities:
    """What callers can expect from a backend's message stream."""
    # Text arrives per delta rather than once at turn end.
    streams_text: bool = False
    # Reasoning arrives per delta rather than once at turn end.
    streams_reasoning: bool = False
    # Tool use can be gated behind on_permission_request.
    permissions: bool = False


class TurnEmitter:
    """Forwards one turn's messages and guarantees a single terminal event."""

    def __init__(self, on_update: UpdateCallback | None) -> None:
        self._on_update = on_update
        self.completed = False
        self.count = 0

    async def __call__(self, message: AgentMessage) -> None:
        if isinstance(message, TurnCompleteMessage):
            await self.finish(message.stop_reason)
            return
        if self.completed:
            logger.debug("Dropping %s emitted after turn_complete", message.type)
            return
        self.count += 1
        await fire_event(self._on_update, message)

    async def drain(self, pending: list[AgentMessage]) -> None:
        """Forward *pending* in order, including messages appended meanwhile."""
        while pending:
            batch = pending[:]
            pending.clear()
            for message in batch:
                await self(message)

    async def finish(self, stop_reason: StopReason) -> None:
        if self.completed:
            return
        self.completed = True
        await fire_event(self._on_update, TurnCompleteMessage(stop_reason=stop_reason))


class Backend(abc.ABC):
    """Abstract backend interface.

    Implementations:
    - OpenRouterBackend / NimBackend: OpenAI-compatible HTTP streaming
    - CursorBackend: ``cursor-agent`` CLI emitting stream-json
    - AiderBackend: ``aider`` CLI emitting terminal text
    - ClaudeBackend: Claude Agent SDK, with permission prompts
    """

    default_model: str | None = None
    # Upper bound for disconnect() to wait on cancelled turns.
    disconnect_timeout: float = 10.0

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._permission_handler: PermissionHandler | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'cursor', 'openrouter')."""

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities()

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Fail fast with ConfigurationError if the vendor is unusable."""

    @abc.abstractmethod
    async def _run_turn(
        self,
        session: Session,
        user_text: str,
        handle: TurnHandle,
        emit: TurnEmitter,
    ) -> str | None:
        """Drive one turn and return the assistant text for history.

        Must not emit ``turn_complete``; ``prompt()`` does. May raise
        ``TurnCancelled`` once the handle is cancelled.
        """

    def is_available(self) -> bool:
        """Cheap synchronous readiness probe used for reporting."""
        return True

    def resolve_command(self, command: str | None, fallback: str) -> str:
        """Prefer an explicit command if it resolves, then the fallback.

        A configured command that is not on PATH is kept as-is so spawn
        errors name what the user configured.
        """
        if command:
            if shutil.which(command) or not shutil.which(fallback):
                return command
            logger.debug(
                "Command %s not found; falling back to %s for backend %s",
                command, fallback, self.name,
            )
        return fallback

    def build_system_prompt(self, config: SessionConfig) -> str:
        base = config.system_prompt or "You are a helpful AI assistant."
        return f"{base} Current working directory: {config.cwd}"

    # ── Sessions ──

    async def new_session(self, config: SessionConfig, session_id: str | None = None) -> str:
        """Create a session; *session_id* lets callers share ids across layers."""
        if session_id is not None and session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        session_id = session_id or str(uuid.uuid4())
        while session_id in self._sessions:
            session_id = str(uuid.uuid4())
        self._sessions[session_id] = Session(
            id=session_id,
            config=config,
            messages=[ChatMessage(MessageRole.SYSTEM, self.build_system_prompt(config))],
            model=config.model or self.default_model,
        )
        logger.info(
            "%s session created id=%s cwd=%s model=%s",
            self.name, session_id[:8], config.cwd, config.model or self.default_model,
        )
        return session_id

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def set_model(self, session_id: str, model: str) -> None:
        session = self.get_session(session_id)
        session.model = model
        session.config.model = model
        logger.info("%s session %s model set to %s", self.name, session_id[:8], model)

    def set_permission_mode(self, session_id: str, mode: PermissionMode) -> None:
        session = self.get_session(session_id)
        session.config.permission_mode = PermissionMode(mode)

    async def restore_history(
        self,
        session_id: str,
        messages: Sequence[ChatMessage | dict],
    ) -> None:
        """Append stored turns to a session without calling the vendor."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("restore_history: unknown session %s ignored", session_id)
            return
        for message in messages:
            if isinstance(message, dict):
                message = ChatMessage(
                    MessageRole(message["role"]), str(message.get("content", "")),
                )
            session.messages.append(message)
        logger.info(
            "%s session %s restored %d messages",
            self.name, session_id[:8], len(messages),
        )

    async def close_session(self, session_id: str) -> None:
        """Cancel the session's turn, wait for it, and forget the session."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        handle = session.turn
        if handle is not None:
            handle.cancel()
            await handle.wait_settled(self.disconnect_timeout)
        self._sessions.pop(session_id, None)
        logger.info("%s session closed id=%s", self.name, session_id[:8])

    # ── Turns ──

    async def prompt(
        self,
        session_id: str,
        content: Sequence[PromptContent | dict | str],
        on_update: UpdateCallback | None,
    ) -> None:
        """Run one turn, forwarding every AgentMessage to *on_update*.

        Ends with exactly one ``turn_complete``. Failures are reported as
        an ``error`` message and then raised; cancellation is not.
        """
        session = self.get_session(session_id)
        user_text = join_prompt_content(list(content))
        session.messages.append(ChatMessage(MessageRole.USER, user_text))

        if session.turn is not None and not session.turn.settled:
            logger.warning(
                "%s session %s already has an active turn; replacing its handle",
                self.name, session_id[:8],
            )
        handle = TurnHandle()
        session.turn = handle
        emit = TurnEmitter(on_update)
        logger.info(
            "%s turn start session=%s chars=%d",
            self.name, session_id[:8], len(user_text),
        )
        try:
            try:
                final_text = await self._run_turn(session, user_text, handle, emit)
            except TurnCancelled:
                final_text = None
            except asyncio.CancelledError:
                handle.cancel()
                await emit.finish(StopReason.CANCELLED)
                raise
            except Exception as exc:
                if handle.cancelled:
                    logger.info(
                        "%s turn session=%s ended by cancellation: %s",
                        self.name, session_id[:8], exc,
                    )
                    await emit.finish(StopReason.CANCELLED)
                    return
                error = exc if isinstance(exc, RelayError) else TransportError(
                    str(exc) or type(exc).__name__
                )
                logger.error(
                    "%s turn failed session=%s: %s", self.name, session_id[:8], error,
                )
                await emit(ErrorMessage(message=str(error) or type(exc).__name__))
                await emit.finish(StopReason.ERROR)
                if error is exc:
                    raise
                raise error from exc

            if handle.cancelled:
                logger.info("%s turn cancelled session=%s", self.name, session_id[:8])
                await emit.finish(StopReason.CANCELLED)
                return

            # disconnect() may have dropped the session while we awaited.
            if final_text and self._sessions.get(session_id) is session:
                session.messages.append(ChatMessage(MessageRole.ASSISTANT, final_text))
            await emit.finish(StopReason.END_TURN)
            logger.info(
                "%s turn complete session=%s events=%d",
                self.name, session_id[:8], emit.count,
            )
        finally:
            if session.turn is handle:
                session.turn = None
            handle.mark_settled()

    async def stream(
        self,
        session_id: str,
        content: Sequence[PromptContent | dict | str],
    ) -> AsyncIterator[AgentMessage]:
        """Async-generator form of ``prompt()``.

        Yields each AgentMessage, ending with ``turn_complete``; the turn's
        exception, if any, is raised after that.
        """
        queue: asyncio.Queue[AgentMessage] = asyncio.Queue()
        task = asyncio.ensure_future(self.prompt(session_id, content, queue.put_nowait))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, task}, return_when=asyncio.FIRST_COMPLETED,
                )
                if getter in done:
                    message = getter.result()
                    yield message
                    if isinstance(message, TurnCompleteMessage):
                        break
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                break
            await task
        finally:
            if not task.done():
                task.cancel()

    async def cancel_prompt(self, session_id: str) -> None:
        """Cancel the active turn. No-op without one."""
        session = self._sessions.get(session_id)
        if session is None or session.turn is None:
            logger.debug("cancel_prompt: no active turn for %s", session_id)
            return
        logger.info("%s cancelling turn session=%s", self.name, session_id[:8])
        session.turn.cancel()

    # ── Permission capability ──

    @property
    def supports_permissions(self) -> bool:
        """Whether tool use can be gated on an interactive approval.

        Default: False. Backends that support it override this and
        ``respond_to_permission``.
        """
        return self.capabilities.permissions

    def on_permission_request(self, handler: PermissionHandler | None) -> None:
        self._permission_handler = handler

    async def respond_to_permission(
        self,
        session_id: str,
        request_id: str,
        response: PermissionResponse,
    ) -> None:
        logger.debug(
            "%s has no permission prompts; response to %s ignored",
            self.name, request_id,
        )

    # ── Teardown ──

    async def disconnect(self) -> None:
        """Cancel every active turn and drop all sessions."""
        handles = [s.turn for s in self._sessions.values() if s.turn is not None]
        for handle in handles:
            handle.cancel()
        for handle in handles:
            if not await handle.wait_settled(self.disconnect_timeout):
                logger.warning(
                    "%s turn did not settle within %.1fs of disconnect",
                    self.name, self.disconnect_timeout,
                )
        count = len(self._sessions)
        self._sessions.clear()
        await self._release()
        logger.info("%s disconnected (%d sessions dropped)", self.name, count)

    async def _release(self) -> None:
        """Free transport resources. Default no-op."""
        return None
