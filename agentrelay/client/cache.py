"""Keyed query cache mirrored from the relay server.

Entries are plain JSON-shaped values (what the REST API returned). An
entry is either fresh or stale; stale entries are refetched by
``SyncEventStream.refetch_stale``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

CacheKey = tuple[Hashable, ...]

SESSIONS_KEY: CacheKey = ("sessions",)
MACHINES_KEY: CacheKey = ("machines",)
ONLINE_USERS_KEY: CacheKey = ("online-users",)


def session_key(session_id: str) -> CacheKey:
    return ("session", session_id)


def messages_key(session_id: str) -> CacheKey:
    return ("messages", session_id)


def typing_key(session_id: str) -> CacheKey:
    return ("typing", session_id)


@dataclass
class CacheEntry:
    value: Any = None
    stale: bool = False


class QueryCache:
    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def get(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, stale=False)

    def update(self, key: CacheKey, fn: Callable[[Any], Any]) -> Any:
        """Replace the value with ``fn(current)``. Staleness is kept."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = CacheEntry()
        entry.value = fn(entry.value)
        return entry.value

    def invalidate(self, key: CacheKey) -> None:
        """Mark *key* stale. Unknown keys are recorded so they get fetched."""
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = CacheEntry(stale=True)
        else:
            entry.stale = True

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.stale

    def remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def stale_keys(self) -> list[CacheKey]:
        return [key for key, entry in self._entries.items() if entry.stale]

    def clear(self) -> None:
        self._entries.clear()
