"""SQLite persistence for sessions, machines and messages.

The store is the source of truth the SyncEngine hydrates from at startup
and writes through to on every mutation.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .records import MachineRecord, MessageRecord, SessionRecord, now_ms

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        tag TEXT,
        namespace TEXT NOT NULL DEFAULT 'default',
        machine_id TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        metadata TEXT,
        agent_state TEXT,
        active INTEGER NOT NULL DEFAULT 0,
        active_at INTEGER NOT NULL DEFAULT 0,
        permission_mode TEXT,
        model_mode TEXT,
        seq INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_tag ON sessions(namespace, tag)",
    """
    CREATE TABLE IF NOT EXISTS machines (
        id TEXT PRIMARY KEY,
        namespace TEXT NOT NULL DEFAULT 'default',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        metadata TEXT,
        active INTEGER NOT NULL DEFAULT 0,
        active_at INTEGER NOT NULL DEFAULT 0,
        seq INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        seq INTEGER NOT NULL,
        local_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_local_id ON messages(session_id, local_id)",
)


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Corrupt JSON column ignored: %.80s", value)
        return None


def _session_from_row(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=row["id"],
        namespace=row["namespace"],
        tag=row["tag"],
        machine_id=row["machine_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        active=bool(row["active"]),
        active_at=row["active_at"],
        metadata=_loads(row["metadata"]),
        agent_state=_loads(row["agent_state"]),
        permission_mode=row["permission_mode"],
        model_mode=row["model_mode"],
        seq=row["seq"],
    )


def _machine_from_row(row: sqlite3.Row) -> MachineRecord:
    return MachineRecord(
        id=row["id"],
        namespace=row["namespace"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        active=bool(row["active"]),
        active_at=row["active_at"],
        metadata=_loads(row["metadata"]),
        seq=row["seq"],
    )


def _message_from_row(row: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        id=row["id"],
        session_id=row["session_id"],
        seq=row["seq"],
        content=_loads(row["content"]),
        created_at=row["created_at"],
        local_id=row["local_id"],
    )


class SessionStore:
    """Session/machine/message CRUD over one SQLite file."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # ── Sessions ──

    def get_sessions(self) -> list[SessionRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM sessions ORDER BY updated_at DESC").fetchall()
        return [_session_from_row(r) for r in rows]

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _session_from_row(row) if row else None

    def create_session(
        self,
        *,
        session_id: str | None = None,
        tag: str | None = None,
        namespace: str = "default",
        machine_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        agent_state: dict[str, Any] | None = None,
        permission_mode: str | None = None,
        model_mode: str | None = None,
    ) -> SessionRecord:
        now = now_ms()
        record = SessionRecord(
            id=session_id or str(uuid.uuid4()),
            namespace=namespace,
            tag=tag,
            machine_id=machine_id,
            created_at=now,
            updated_at=now,
            metadata=metadata,
            agent_state=agent_state,
            permission_mode=permission_mode,
            model_mode=model_mode,
        )
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, tag, namespace, machine_id, created_at,
                    updated_at, metadata, agent_state, active, active_at,
                    permission_mode, model_mode, seq)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?, 0)
                """,
                (
                    record.id, tag, namespace, machine_id, now, now,
                    _dumps(metadata), _dumps(agent_state), permission_mode, model_mode,
                ),
            )
        return record

    def get_or_create_session(
        self,
        tag: str,
        *,
        namespace: str = "default",
        **kwargs: Any,
    ) -> tuple[SessionRecord, bool]:
        """Return (session, created) for a client-chosen tag."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE namespace = ? AND tag = ?", (namespace, tag),
            ).fetchone()
        if row:
            return _session_from_row(row), False
        return self.create_session(tag=tag, namespace=namespace, **kwargs), True

    def update_session_metadata(self, session_id: str, metadata: dict[str, Any]) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE sessions SET metadata = ?, updated_at = ?, seq = seq + 1 WHERE id = ?",
                (_dumps(metadata), now_ms(), session_id),
            )
        return cur.rowcount > 0

    def update_session_status(
        self,
        session_id: str,
        *,
        active: bool | None = None,
        active_at: int | None = None,
        permission_mode: str | None = None,
        model_mode: str | None = None,
    ) -> bool:
        updates: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("active", None if active is None else int(active)),
            ("active_at", active_at),
            ("permission_mode", permission_mode),
            ("model_mode", model_mode),
        ):
            if value is not None:
                updates.append(f"{column} = ?")
                params.append(value)
        if not updates:
            return False
        params.append(session_id)
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE sessions SET {', '.join(updates)} WHERE id = ?", params,
            )
        return cur.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self._transaction() as conn:
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cur.rowcount > 0

    # ── Machines ──

    def get_machines(self) -> list[MachineRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM machines ORDER BY updated_at DESC").fetchall()
        return [_machine_from_row(r) for r in rows]

    def get_machine(self, machine_id: str) -> MachineRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM machines WHERE id = ?", (machine_id,)).fetchone()
        return _machine_from_row(row) if row else None

    def get_or_create_machine(
        self,
        machine_id: str,
        *,
        namespace: str = "default",
        metadata: dict[str, Any] | None = None,
    ) -> tuple[MachineRecord, bool]:
        existing = self.get_machine(machine_id)
        if existing is not None:
            return existing, False
        now = now_ms()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO machines (id, namespace, created_at, updated_at, metadata)
                VALUES (?, ?, ?, ?, ?)
                """,
                (machine_id, namespace, now, now, _dumps(metadata)),
            )
        return MachineRecord(
            id=machine_id, namespace=namespace, created_at=now, updated_at=now, metadata=metadata,
        ), True

    def update_machine_status(self, machine_id: str, *, active: bool, active_at: int) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE machines SET active = ?, active_at = ? WHERE id = ?",
                (int(active), active_at, machine_id),
            )
        return cur.rowcount > 0

    # ── Messages ──

    def add_message(
        self,
        session_id: str,
        content: Any,
        local_id: str | None = None,
    ) -> tuple[MessageRecord, bool]:
        """Append a message with the next per-session seq.

        Returns (message, created). A repeated ``local_id`` returns the
        stored message unchanged.
        """
        with self._transaction() as conn:
            if local_id is not None:
                row = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? AND local_id = ?",
                    (session_id, local_id),
                ).fetchone()
                if row:
                    return _message_from_row(row), False
            seq = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()[0]
            record = MessageRecord(
                id=str(uuid.uuid4()),
                session_id=session_id,
                seq=seq,
                content=content,
                created_at=now_ms(),
                local_id=local_id,
            )
            conn.execute(
                """
                INSERT INTO messages (id, session_id, content, created_at, seq, local_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (record.id, session_id, json.dumps(content), record.created_at, seq, local_id),
            )
            conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?",
                (record.created_at, session_id),
            )
        return record, True

    def get_messages(
        self,
        session_id: str,
        limit: int = 200,
        before_seq: int | None = None,
    ) -> list[MessageRecord]:
        """Latest *limit* messages (older than *before_seq*), oldest first."""
        with self._transaction() as conn:
            if before_seq is None:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?",
                    (session_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? AND seq < ? "
                    "ORDER BY seq DESC LIMIT ?",
                    (session_id, before_seq, limit),
                ).fetchall()
        return [_message_from_row(r) for r in reversed(rows)]

    def get_messages_after(
        self,
        session_id: str,
        after_seq: int,
        limit: int = 200,
    ) -> list[MessageRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE session_id = ? AND seq > ? ORDER BY seq ASC LIMIT ?",
                (session_id, after_seq, limit),
            ).fetchall()
        return [_message_from_row(r) for r in rows]

    def clear_messages(self, session_id: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        return cur.rowcount
