"""agentrelay engine - vendor backends, stream parsers, process supervision."""
from .config import RelayConfig
from .errors import (
    ConfigurationError,
    ProcessSpawnError,
    RelayError,
    SessionBusyError,
    SessionNotFoundError,
    TransportError,
    UnknownAgentError,
)
from .models import (
    AgentMessage,
    ChatMessage,
    ErrorMessage,
    MessageRole,
    PermissionMode,
    PermissionRequest,
    PermissionResponse,
    PromptContent,
    ReasoningMessage,
    Session,
    SessionConfig,
    StopReason,
    TextMessage,
    ToolCallMessage,
    ToolResultMessage,
    ToolStatus,
    TurnCompleteMessage,
)

__all__ = [
    # Config
    "RelayConfig",
    "RelayYamlConfig",
    "load_yaml_config",
    # Errors
    "ConfigurationError",
    "ProcessSpawnError",
    "RelayError",
    "SessionBusyError",
    "SessionNotFoundError",
    "TransportError",
    "UnknownAgentError",
    # Models
    "AgentMessage",
    "ChatMessage",
    "ErrorMessage",
    "MessageRole",
    "PermissionMode",
    "PermissionRequest",
    "PermissionResponse",
    "PromptContent",
    "ReasoningMessage",
    "Session",
    "SessionConfig",
    "StopReason",
    "TextMessage",
    "ToolCallMessage",
    "ToolResultMessage",
    "ToolStatus",
    "TurnCompleteMessage",
    # Runtime (lazy import)
    "ProcessSupervisor",
    "TurnHandle",
    "AgentRegistry",
    "build_agent_registry",
]


def __getattr__(name: str):
    if name in ("RelayYamlConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "TurnHandle":
        from .turn import TurnHandle
        return TurnHandle
    if name in ("AgentRegistry", "build_agent_registry"):
        from . import backends
        return getattr(backends, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
