"""Exception hierarchy for the relay engine.

Specific exceptions for each failure mode a backend surfaces to its
callers. Cancellation is not an exception: it ends a turn with a
``turn_complete`` carrying ``stop_reason=cancelled``.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class SessionNotFoundError(RelayError):
    """Caller passed a stale or unknown session id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ConfigurationError(RelayError):
    """A required credential or binary is missing."""
    def __init__(self, missing: str, hint: str = ""):
        self.missing = missing
        self.hint = hint
        message = f"{missing} is not configured"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class TransportError(RelayError):
    """Vendor HTTP non-2xx response or process failure."""
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        exit_code: int | None = None,
    ):
        self.status = status
        self.exit_code = exit_code
        super().__init__(message)


class ProcessSpawnError(TransportError):
    """The agent CLI could not be started at all."""
    def __init__(self, spawn_name: str, reason: str, install_hint: str):
        self.spawn_name = spawn_name
        self.reason = reason
        self.install_hint = install_hint
        super().__init__(
            f"Failed to spawn {spawn_name}: {reason}. "
            f"Is {install_hint} installed and on PATH?"
        )


class UnknownAgentError(RelayError):
    """Requested agent name is not registered."""
    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        super().__init__(
            f"Agent '{name}' not registered. "
            f"Available: {', '.join(available) or 'none'}"
        )


class SessionBusyError(RelayError):
    """A turn is already running for the session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has an active turn")
