"""Sync events pushed from the server to subscribers.

One dataclass covers every event kind; ``type`` is the discriminant and
``data`` the optional partial-update payload. ``event_to_dict`` produces
the camelCase JSON sent on the SSE wire.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

SESSION_ADDED = "session-added"
SESSION_UPDATED = "session-updated"
SESSION_REMOVED = "session-removed"
MESSAGE_RECEIVED = "message-received"
MESSAGES_CLEARED = "messages-cleared"
MACHINE_UPDATED = "machine-updated"
ONLINE_USERS_CHANGED = "online-users-changed"
TYPING_CHANGED = "typing-changed"
CONNECTION_CHANGED = "connection-changed"

EVENT_TYPES = frozenset({
    SESSION_ADDED,
    SESSION_UPDATED,
    SESSION_REMOVED,
    MESSAGE_RECEIVED,
    MESSAGES_CLEARED,
    MACHINE_UPDATED,
    ONLINE_USERS_CHANGED,
    TYPING_CHANGED,
    CONNECTION_CHANGED,
})


@dataclass
class SyncEvent:
    type: str
    session_id: str | None = None
    machine_id: str | None = None
    data: Any = None
    namespace: str = "default"
    # Connection that caused the event; typing echoes skip it.
    client_id: str | None = None


def event_to_dict(event: SyncEvent) -> dict[str, Any]:
    """Convert an event to its wire dict. Namespace stays server-side."""
    d: dict[str, Any] = {"type": event.type}
    if event.session_id is not None:
        d["sessionId"] = event.session_id
    if event.machine_id is not None:
        d["machineId"] = event.machine_id
    if event.data is not None:
        d["data"] = event.data
    return d


def dict_to_event(data: dict[str, Any], namespace: str = "default") -> SyncEvent:
    """Parse a wire dict. Raises ValueError for unknown event types."""
    event_type = data.get("type", "")
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown sync event type: {event_type!r}")
    return SyncEvent(
        type=event_type,
        session_id=data.get("sessionId"),
        machine_id=data.get("machineId"),
        data=data.get("data"),
        namespace=namespace,
    )
