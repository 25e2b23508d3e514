"""Authoritative in-memory index of sessions, machines and messages.

The SyncEngine is the single writer of server-wide state. Every mutation
goes to the SessionStore first, then the index, then out to listeners as
a SyncEvent. Listeners run synchronously in emission order, so per-session
event order is the order mutations happened in.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .events import (
    MACHINE_UPDATED,
    MESSAGE_RECEIVED,
    MESSAGES_CLEARED,
    SESSION_ADDED,
    SESSION_REMOVED,
    SESSION_UPDATED,
    TYPING_CHANGED,
    SyncEvent,
)
from .records import MachineRecord, MessageRecord, SessionRecord, now_ms
from .store import SessionStore

logger = logging.getLogger(__name__)

SyncListener = Callable[[SyncEvent], None]

# Alive pings older than this are stale and ignored.
MAX_ALIVE_AGE_MS = 10 * 60 * 1000
BROADCAST_INTERVAL_MS = 10_000


def clamp_alive_time(t: int | float | None) -> int | None:
    """Clamp a client timestamp to now; reject missing or stale ones."""
    if t is None:
        return None
    try:
        t = int(t)
    except (TypeError, ValueError):
        return None
    now = now_ms()
    if t > now:
        return now
    if t < now - MAX_ALIVE_AGE_MS:
        return None
    return t


class SyncEngine:
    def __init__(
        self,
        store: SessionStore,
        *,
        session_timeout: float = 30.0,
        machine_timeout: float = 45.0,
        expire_interval: float = 5.0,
    ) -> None:
        self._store = store
        self._session_timeout_ms = int(session_timeout * 1000)
        self._machine_timeout_ms = int(machine_timeout * 1000)
        self._expire_interval = expire_interval
        self._sessions: dict[str, SessionRecord] = {}
        self._machines: dict[str, MachineRecord] = {}
        self._listeners: list[SyncListener] = []
        self._last_broadcast_session: dict[str, int] = {}
        self._last_broadcast_machine: dict[str, int] = {}
        self._expire_task: asyncio.Task | None = None
        # Sessions with a turn driven by this process.
        self._running: set[str] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    # ── Lifecycle ──

    def reload_all(self) -> None:
        """Hydrate the index from the store."""
        self._sessions = {s.id: s for s in self._store.get_sessions()}
        self._machines = {m.id: m for m in self._store.get_machines()}
        logger.info(
            "SyncEngine hydrated sessions=%d machines=%d",
            len(self._sessions), len(self._machines),
        )

    def start(self) -> None:
        if self._expire_task is None or self._expire_task.done():
            self._expire_task = asyncio.ensure_future(self._expire_loop())

    async def stop(self) -> None:
        task = self._expire_task
        self._expire_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _expire_loop(self) -> None:
        while True:
            await asyncio.sleep(self._expire_interval)
            try:
                self.expire_inactive()
            except Exception:
                logger.exception("expire_inactive failed")

    # ── Listeners ──

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: SyncEvent) -> None:
        if event.session_id and event.session_id in self._sessions:
            event.namespace = self._sessions[event.session_id].namespace
        elif event.machine_id and event.machine_id in self._machines:
            event.namespace = self._machines[event.machine_id].namespace
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Sync listener failed event=%s", event.type)

    # ── Reads ──

    def get_sessions(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def get_sessions_by_namespace(self, namespace: str) -> list[SessionRecord]:
        return [s for s in self._sessions.values() if s.namespace == namespace]

    def get_session(self, session_id: str) -> SessionRecord | None:
        return self._sessions.get(session_id)

    def get_active_sessions(self) -> list[SessionRecord]:
        return [s for s in self._sessions.values() if s.active]

    def get_machines(self) -> list[MachineRecord]:
        return list(self._machines.values())

    def get_machine(self, machine_id: str) -> MachineRecord | None:
        return self._machines.get(machine_id)

    def get_session_messages(self, session_id: str) -> list[MessageRecord]:
        return self._store.get_messages(session_id)

    def get_messages_page(
        self,
        session_id: str,
        limit: int = 50,
        before_seq: int | None = None,
    ) -> dict[str, Any]:
        messages = self._store.get_messages(session_id, limit, before_seq)
        next_before = min((m.seq for m in messages), default=None)
        has_more = (
            next_before is not None
            and bool(self._store.get_messages(session_id, 1, next_before))
        )
        return {
            "messages": [m.to_dict() for m in messages],
            "page": {
                "limit": limit,
                "beforeSeq": before_seq,
                "nextBeforeSeq": next_before,
                "hasMore": has_more,
            },
        }

    def get_messages_after(
        self, session_id: str, after_seq: int, limit: int = 200,
    ) -> list[MessageRecord]:
        return self._store.get_messages_after(session_id, after_seq, limit)

    # ── Writes ──

    def create_session(self, **kwargs: Any) -> SessionRecord:
        session = self._store.create_session(**kwargs)
        self._sessions[session.id] = session
        self.emit(SyncEvent(SESSION_ADDED, session_id=session.id, data=session.to_summary()))
        return session

    def get_or_create_session(self, tag: str, **kwargs: Any) -> SessionRecord:
        session, created = self._store.get_or_create_session(tag, **kwargs)
        self._sessions[session.id] = session
        if created:
            self.emit(SyncEvent(SESSION_ADDED, session_id=session.id, data=session.to_summary()))
        return session

    def update_session_metadata(self, session_id: str, metadata: dict[str, Any]) -> SessionRecord | None:
        session = self._sessions.get(session_id)
        if session is None or not self._store.update_session_metadata(session_id, metadata):
            return None
        session.metadata = metadata
        session.updated_at = now_ms()
        session.seq += 1
        self.emit(SyncEvent(SESSION_UPDATED, session_id=session_id, data={"metadata": metadata}))
        return session

    def set_permission_mode(self, session_id: str, mode: str) -> SessionRecord | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        self._store.update_session_status(session_id, permission_mode=mode)
        session.permission_mode = mode
        self.emit(SyncEvent(SESSION_UPDATED, session_id=session_id, data={"permissionMode": mode}))
        return session

    def set_model_mode(self, session_id: str, model_mode: str) -> SessionRecord | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        self._store.update_session_status(session_id, model_mode=model_mode)
        session.model_mode = model_mode
        self.emit(SyncEvent(SESSION_UPDATED, session_id=session_id, data={"modelMode": model_mode}))
        return session

    def delete_session(self, session_id: str) -> bool:
        deleted = self._store.delete_session(session_id)
        existed = self._sessions.pop(session_id, None) is not None
        self._last_broadcast_session.pop(session_id, None)
        self._running.discard(session_id)
        if deleted or existed:
            self.emit(SyncEvent(SESSION_REMOVED, session_id=session_id))
            return True
        return False

    def add_message(
        self,
        session_id: str,
        content: Any,
        local_id: str | None = None,
    ) -> MessageRecord:
        """Store a message and broadcast it. Duplicate local ids are not re-sent."""
        message, created = self._store.add_message(session_id, content, local_id)
        session = self._sessions.get(session_id)
        if session is not None:
            session.updated_at = message.created_at
        if created:
            self.emit(SyncEvent(MESSAGE_RECEIVED, session_id=session_id, data=message.to_dict()))
        return message

    def clear_session_messages(self, session_id: str) -> int:
        deleted = self._store.clear_messages(session_id)
        self.emit(SyncEvent(MESSAGES_CLEARED, session_id=session_id))
        return deleted

    def get_or_create_machine(
        self,
        machine_id: str,
        *,
        namespace: str = "default",
        metadata: dict[str, Any] | None = None,
    ) -> MachineRecord:
        machine, created = self._store.get_or_create_machine(
            machine_id, namespace=namespace, metadata=metadata,
        )
        self._machines[machine.id] = machine
        if created:
            self.emit(SyncEvent(MACHINE_UPDATED, machine_id=machine.id, data=machine.to_dict()))
        return machine

    def set_typing(self, session_id: str, client_id: str | None, typing: bool, **extra: Any) -> None:
        data = {"clientId": client_id, "typing": typing, "at": now_ms(), **extra}
        self.emit(SyncEvent(TYPING_CHANGED, session_id=session_id, data=data, client_id=client_id))

    def set_thinking(self, session_id: str, thinking: bool) -> None:
        """Mark a locally driven turn as running or finished."""
        if thinking:
            self._running.add(session_id)
        else:
            self._running.discard(session_id)
        session = self._sessions.get(session_id)
        if session is None:
            return
        was_thinking = session.thinking
        now = now_ms()
        session.thinking = thinking
        session.thinking_at = now
        if thinking:
            session.active = True
            session.active_at = max(session.active_at, now)
            self._store.update_session_status(session_id, active=True, active_at=session.active_at)
        if was_thinking != thinking:
            self.emit(SyncEvent(SESSION_UPDATED, session_id=session_id, data={
                "active": session.active,
                "activeAt": session.active_at,
                "thinking": thinking,
                "wasThinking": was_thinking and not thinking,
            }))

    # ── Liveness ──

    def handle_session_alive(
        self,
        session_id: str,
        time_ms: int | None = None,
        *,
        thinking: bool = False,
        permission_mode: str | None = None,
        model_mode: str | None = None,
        model_reasoning_effort: str | None = None,
    ) -> bool:
        """Record a heartbeat. Returns True when an update was broadcast."""
        t = clamp_alive_time(now_ms() if time_ms is None else time_ms)
        if t is None:
            return False
        session = self._sessions.get(session_id)
        if session is None:
            return False

        was_active = session.active
        was_thinking = session.thinking
        previous = (session.permission_mode, session.model_mode, session.model_reasoning_effort)

        session.active = True
        session.active_at = max(session.active_at, t)
        session.thinking = bool(thinking)
        session.thinking_at = t
        if permission_mode is not None:
            session.permission_mode = permission_mode
        if model_mode is not None:
            session.model_mode = model_mode
        if model_reasoning_effort is not None:
            session.model_reasoning_effort = model_reasoning_effort
        modes_changed = previous != (
            session.permission_mode, session.model_mode, session.model_reasoning_effort,
        )

        now = now_ms()
        last = self._last_broadcast_session.get(session_id, 0)
        if not (
            not was_active
            or was_thinking != session.thinking
            or modes_changed
            or now - last > BROADCAST_INTERVAL_MS
        ):
            return False

        self._last_broadcast_session[session_id] = now
        self._store.update_session_status(
            session_id,
            active=True,
            active_at=session.active_at,
            permission_mode=permission_mode,
            model_mode=model_mode,
        )
        self.emit(SyncEvent(SESSION_UPDATED, session_id=session_id, data={
            "active": True,
            "activeAt": session.active_at,
            "thinking": session.thinking,
            "wasThinking": was_thinking and not session.thinking,
            "permissionMode": session.permission_mode,
            "modelMode": session.model_mode,
            "modelReasoningEffort": session.model_reasoning_effort,
        }))
        return True

    def handle_session_end(self, session_id: str, time_ms: int | None = None) -> bool:
        session = self._sessions.get(session_id)
        if session is None or (not session.active and not session.thinking):
            return False
        was_thinking = session.thinking
        session.active = False
        session.thinking = False
        session.thinking_at = clamp_alive_time(time_ms) or now_ms()
        self._store.update_session_status(session_id, active=False)
        self.emit(SyncEvent(SESSION_UPDATED, session_id=session_id, data={
            "active": False, "thinking": False, "wasThinking": was_thinking,
        }))
        return True

    def handle_machine_alive(self, machine_id: str, time_ms: int | None = None) -> bool:
        t = clamp_alive_time(now_ms() if time_ms is None else time_ms)
        if t is None:
            return False
        machine = self._machines.get(machine_id)
        if machine is None:
            return False
        was_active = machine.active
        machine.active = True
        machine.active_at = max(machine.active_at, t)

        now = now_ms()
        last = self._last_broadcast_machine.get(machine_id, 0)
        if was_active and now - last <= BROADCAST_INTERVAL_MS:
            return False
        self._last_broadcast_machine[machine_id] = now
        self._store.update_machine_status(machine_id, active=True, active_at=machine.active_at)
        self.emit(SyncEvent(MACHINE_UPDATED, machine_id=machine_id, data={
            "active": True, "activeAt": machine.active_at,
        }))
        return True

    def expire_inactive(self, now: int | None = None) -> int:
        """Deactivate sessions and machines whose heartbeats stopped."""
        now = now_ms() if now is None else now
        expired = 0
        for session in list(self._sessions.values()):
            if not session.active or now - session.active_at <= self._session_timeout_ms:
                continue
            # A turn driven by this process keeps its session alive.
            if session.id in self._running:
                continue
            session.active = False
            session.thinking = False
            self._store.update_session_status(session.id, active=False)
            self.emit(SyncEvent(SESSION_UPDATED, session_id=session.id, data={"active": False}))
            expired += 1
        for machine in list(self._machines.values()):
            if not machine.active or now - machine.active_at <= self._machine_timeout_ms:
                continue
            machine.active = False
            self._store.update_machine_status(machine.id, active=False, active_at=machine.active_at)
            self.emit(SyncEvent(MACHINE_UPDATED, machine_id=machine.id, data={"active": False}))
            expired += 1
        if expired:
            logger.debug("Expired inactive entries count=%d", expired)
        return expired
