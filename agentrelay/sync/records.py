"""Session, machine and message records held by the SyncEngine.

Times are milliseconds since the epoch, the unit web clients use.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionRecord:
    id: str
    namespace: str = "default"
    tag: str | None = None
    machine_id: str | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    active: bool = False
    active_at: int = 0
    metadata: dict[str, Any] | None = None
    agent_state: dict[str, Any] | None = None
    thinking: bool = False
    thinking_at: int = 0
    permission_mode: str | None = None
    model_mode: str | None = None
    model_reasoning_effort: str | None = None
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "tag": self.tag,
            "machineId": self.machine_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "active": self.active,
            "activeAt": self.active_at,
            "metadata": self.metadata,
            "agentState": self.agent_state,
            "thinking": self.thinking,
            "thinkingAt": self.thinking_at,
            "permissionMode": self.permission_mode,
            "modelMode": self.model_mode,
            "modelReasoningEffort": self.model_reasoning_effort,
            "seq": self.seq,
        }

    def to_summary(self) -> dict[str, Any]:
        """Compact form used in session lists."""
        metadata = self.metadata or {}
        return {
            "id": self.id,
            "active": self.active,
            "thinking": self.thinking,
            "activeAt": self.active_at,
            "updatedAt": self.updated_at,
            "machineId": self.machine_id,
            "agent": metadata.get("agent"),
            "name": metadata.get("name"),
            "path": metadata.get("path"),
            "permissionMode": self.permission_mode,
            "modelMode": self.model_mode,
        }


@dataclass
class MachineRecord:
    id: str
    namespace: str = "default"
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    active: bool = False
    active_at: int = 0
    metadata: dict[str, Any] | None = None
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "active": self.active,
            "activeAt": self.active_at,
            "metadata": self.metadata,
            "seq": self.seq,
        }


@dataclass
class MessageRecord:
    id: str
    session_id: str
    seq: int
    content: Any
    created_at: int = field(default_factory=now_ms)
    local_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seq": self.seq,
            "localId": self.local_id,
            "content": self.content,
            "createdAt": self.created_at,
        }
