"""Sync package - server-wide session state and its fan-out.

The SessionStore persists, the SyncEngine indexes and broadcasts, the
SSEManager routes events to subscribers, and the SessionHub drives
backend turns into the engine.
"""
from __future__ import annotations

__all__ = [
    "SessionStore",
    "SyncEngine",
    "SyncEvent",
    "SSEManager",
    "Subscription",
    "SessionHub",
]

from agentrelay.sync.events import SyncEvent
from agentrelay.sync.fanout import SSEManager, Subscription
from agentrelay.sync.hub import SessionHub
from agentrelay.sync.engine import SyncEngine
from agentrelay.sync.store import SessionStore
