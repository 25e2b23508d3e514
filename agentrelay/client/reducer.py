"""Applies SyncEvents to a QueryCache.

Each event type maps to one cache mutation. ``message-received`` is an
upsert by message id, so duplicate delivery leaves one copy.
"""
from __future__ import annotations

import logging
from typing import Any

from ..sync.events import (
    CONNECTION_CHANGED,
    MACHINE_UPDATED,
    MESSAGE_RECEIVED,
    MESSAGES_CLEARED,
    ONLINE_USERS_CHANGED,
    SESSION_ADDED,
    SESSION_REMOVED,
    SESSION_UPDATED,
    TYPING_CHANGED,
    SyncEvent,
)
from ..sync.records import now_ms
from .cache import (
    MACHINES_KEY,
    ONLINE_USERS_KEY,
    SESSIONS_KEY,
    QueryCache,
    messages_key,
    session_key,
    typing_key,
)

logger = logging.getLogger(__name__)

# Fields a session-updated payload may patch in place.
SESSION_STATUS_FIELDS = (
    "active",
    "thinking",
    "permissionMode",
    "modelMode",
    "modelReasoningEffort",
    "fastMode",
)
# The subset (plus activeAt) carried by list summaries.
SUMMARY_STATUS_FIELDS = (
    "active",
    "activeAt",
    "thinking",
    "permissionMode",
    "modelMode",
    "modelReasoningEffort",
    "fastMode",
)


def upsert_messages(existing: list[dict[str, Any]] | None, incoming: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Merge *incoming* into *existing* by id, sorted by seq."""
    by_id: dict[str, dict[str, Any]] = {}
    for message in existing or []:
        by_id[message["id"]] = message
    for message in incoming:
        by_id[message["id"]] = message
    return sorted(by_id.values(), key=lambda m: (m.get("seq") is None, m.get("seq") or 0))


class SyncReducer:
    def __init__(self, cache: QueryCache) -> None:
        self.cache = cache
        self._handlers = {
            SESSION_ADDED: self._session_added,
            SESSION_REMOVED: self._session_removed,
            SESSION_UPDATED: self._session_updated,
            MESSAGE_RECEIVED: self._message_received,
            MESSAGES_CLEARED: self._messages_cleared,
            MACHINE_UPDATED: self._machine_updated,
            TYPING_CHANGED: self._typing_changed,
            ONLINE_USERS_CHANGED: self._online_users_changed,
        }

    def apply(self, event: SyncEvent) -> None:
        if event.type == CONNECTION_CHANGED:
            return
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Reducer ignoring event type=%s", event.type)
            return
        handler(event)

    def handle_connect(self, *, all: bool = False, session_id: str | None = None, machine_id: str | None = None) -> None:
        """Invalidate everything in the subscribed scope.

        Events missed while disconnected are not replayed, so the scope is
        refetched from scratch.
        """
        if all:
            for key in self.cache.keys():
                if key[0] in ("session", "messages"):
                    self.cache.invalidate(key)
            self.cache.invalidate(SESSIONS_KEY)
            self.cache.invalidate(MACHINES_KEY)
        if session_id:
            self.cache.invalidate(session_key(session_id))
            self.cache.invalidate(messages_key(session_id))
        if machine_id:
            self.cache.invalidate(MACHINES_KEY)

    # ── Handlers ──

    def _session_added(self, event: SyncEvent) -> None:
        self.cache.invalidate(SESSIONS_KEY)
        if event.session_id:
            self.cache.invalidate(session_key(event.session_id))

    def _session_removed(self, event: SyncEvent) -> None:
        self.cache.invalidate(SESSIONS_KEY)
        if event.session_id:
            self.cache.remove(session_key(event.session_id))
            self.cache.remove(messages_key(event.session_id))
            self.cache.remove(typing_key(event.session_id))

    def _session_updated(self, event: SyncEvent) -> None:
        if not event.session_id:
            self.cache.invalidate(SESSIONS_KEY)
            return
        data = event.data if isinstance(event.data, dict) else {}
        if not any(field in data for field in SESSION_STATUS_FIELDS):
            self.cache.invalidate(SESSIONS_KEY)
            self.cache.invalidate(session_key(event.session_id))
            return

        patch = {f: data[f] for f in SESSION_STATUS_FIELDS if f in data}
        summary_patch = {f: data[f] for f in SUMMARY_STATUS_FIELDS if f in data}
        key = session_key(event.session_id)
        if self.cache.get(key) is not None:
            self.cache.update(key, lambda session: {**session, **patch})

        def patch_list(sessions: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
            if sessions is None:
                return None
            return [
                {**s, **summary_patch} if s.get("id") == event.session_id else s
                for s in sessions
            ]

        if self.cache.get(SESSIONS_KEY) is not None:
            self.cache.update(SESSIONS_KEY, patch_list)

    def _message_received(self, event: SyncEvent) -> None:
        message = event.data
        if not event.session_id or not isinstance(message, dict) or "id" not in message:
            return
        self.cache.update(
            messages_key(event.session_id),
            lambda existing: upsert_messages(existing, [message]),
        )

    def _messages_cleared(self, event: SyncEvent) -> None:
        if event.session_id:
            self.cache.set(messages_key(event.session_id), [])

    def _machine_updated(self, event: SyncEvent) -> None:
        self.cache.invalidate(MACHINES_KEY)

    def _typing_changed(self, event: SyncEvent) -> None:
        if event.session_id and event.data:
            self.cache.set(typing_key(event.session_id), {"typing": event.data, "updatedAt": now_ms()})

    def _online_users_changed(self, event: SyncEvent) -> None:
        data = event.data if isinstance(event.data, dict) else {}
        self.cache.set(ONLINE_USERS_KEY, list(data.get("users") or []))
