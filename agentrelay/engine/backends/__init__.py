"""Agent backends: one adapter per vendor behind a common contract."""
from .base import Backend, BackendCapabilities, TurnEmitter
from .registry import AgentRegistry, build_agent_registry

__all__ = [
    "Backend",
    "BackendCapabilities",
    "TurnEmitter",
    "AgentRegistry",
    "build_agent_registry",
    "OpenRouterBackend",
    "NimBackend",
    "CursorBackend",
    "AiderBackend",
    "ClaudeBackend",
]


def __getattr__(name: str):
    if name == "OpenRouterBackend":
        from .openrouter import OpenRouterBackend
        return OpenRouterBackend
    if name == "NimBackend":
        from .nim import NimBackend
        return NimBackend
    if name == "CursorBackend":
        from .cursor import CursorBackend
        return CursorBackend
    if name == "AiderBackend":
        from .aider import AiderBackend
        return AiderBackend
    if name == "ClaudeBackend":
        from .claude import ClaudeBackend
        return ClaudeBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
