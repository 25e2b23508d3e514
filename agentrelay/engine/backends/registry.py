"""Agent registry - maps agent names to backend factories.

The registry is an ordinary object: the server builds one at startup and
passes it to whatever needs it. Tests build as many as they like.
"""
from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Callable

from ..credentials import CredentialStore, EnvCredentialStore
from ..errors import ConfigurationError, UnknownAgentError
from .base import Backend

if TYPE_CHECKING:
    from ..yaml_config import AgentConfig

logger = logging.getLogger(__name__)

BackendFactory = Callable[[], Backend]


class AgentRegistry:
    """Registry of agent backends.

    Each name has a factory; the first ``get()`` builds the backend and
    later calls share that instance, since a backend owns the session
    table for its vendor. ``bind_session`` records which agent serves
    which session.
    """

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}
        self._backends: dict[str, Backend] = {}
        self._session_agents: dict[str, str] = {}

    def register(self, name: str, factory: BackendFactory) -> None:
        """Register (or replace) a backend factory by name."""
        self._factories[name] = factory
        self._backends.pop(name, None)
        logger.info("Agent registered: %s", name)

    def create(self, name: str) -> Backend:
        """Build a new backend instance, bypassing the cache."""
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownAgentError(name, self.list_names())
        return factory()

    def get(self, name: str) -> Backend:
        """Get the shared backend for *name*, building it on first use."""
        backend = self._backends.get(name)
        if backend is None:
            backend = self.create(name)
            self._backends[name] = backend
        return backend

    def list_names(self) -> list[str]:
        return list(self._factories)

    def availability_report(self) -> dict[str, bool]:
        """Map agent name -> whether its backend looks usable."""
        report: dict[str, bool] = {}
        for name in self._factories:
            try:
                report[name] = self.get(name).is_available()
            except ConfigurationError:
                report[name] = False
        return report

    # ── Session routing ──

    def bind_session(self, session_id: str, name: str) -> None:
        if name not in self._factories:
            raise UnknownAgentError(name, self.list_names())
        self._session_agents[session_id] = name

    def unbind_session(self, session_id: str) -> None:
        self._session_agents.pop(session_id, None)

    def agent_for(self, session_id: str) -> str | None:
        return self._session_agents.get(session_id)

    def resolve(self, session_id: str) -> Backend | None:
        """Backend serving *session_id*, or None if unbound."""
        name = self._session_agents.get(session_id)
        if name is None:
            return None
        return self.get(name)

    async def shutdown_all(self) -> None:
        """Disconnect every backend that was built."""
        for name, backend in list(self._backends.items()):
            try:
                await backend.disconnect()
            except Exception as exc:
                logger.error("Error disconnecting agent '%s': %s", name, exc)
        self._backends.clear()
        self._session_agents.clear()

    @property
    def count(self) -> int:
        return len(self._factories)


def _missing_key_factory(name: str, missing: str, hint: str) -> BackendFactory:
    def factory() -> Backend:
        raise ConfigurationError(missing, hint)
    logger.warning("Agent %s registered without credentials: %s", name, missing)
    return factory


def _make_factory(
    cfg: AgentConfig,
    credentials: CredentialStore,
    grace_period: float,
    kill_timeout: float,
) -> BackendFactory:
    api_key = os.environ.get(cfg.api_key_env) if cfg.api_key_env else None
    options = dict(cfg.options)

    if cfg.type == "openrouter":
        from .openrouter import OpenRouterBackend

        return lambda: OpenRouterBackend(
            model=cfg.model, api_key=api_key, api_url=cfg.api_url, credentials=credentials,
        )

    if cfg.type == "nim":
        from .nim import NimBackend

        return lambda: NimBackend(
            agent_name=cfg.name,
            model=cfg.model,
            api_key=api_key,
            api_url=cfg.api_url,
            credentials=credentials,
        )

    if cfg.type == "cursor":
        from .cursor import CURSOR_KEY_HINT, CursorBackend

        if not (api_key or credentials.get_token("cursor")):
            return _missing_key_factory(cfg.name, "Cursor API key (CURSOR_API_KEY)", CURSOR_KEY_HINT)
        return lambda: CursorBackend(
            command=cfg.command,
            api_key=api_key,
            credentials=credentials,
            model=cfg.model,
            auto_confirm=bool(options.get("force", True)),
            grace_period=grace_period,
            kill_timeout=kill_timeout,
        )

    if cfg.type == "aider":
        from .aider import AiderBackend

        return lambda: AiderBackend(
            command=cfg.command,
            model=cfg.model,
            openrouter_api_key=api_key,
            credentials=credentials,
            yes_always=bool(options.get("yes_always", True)),
            stream=bool(options.get("stream", True)),
            auto_commits=bool(options.get("auto_commits", False)),
            grace_period=grace_period,
            kill_timeout=kill_timeout,
        )

    if cfg.type == "claude":
        from .claude import ClaudeBackend

        return lambda: ClaudeBackend(
            model=cfg.model,
            cli_path=cfg.command,
            allowed_tools=options.get("allowed_tools"),
        )

    raise ValueError(f"Unknown agent type '{cfg.type}' for '{cfg.name}'")


def build_agent_registry(
    agent_configs: dict[str, AgentConfig] | None = None,
    credentials: CredentialStore | None = None,
    *,
    grace_period: float = 2.0,
    kill_timeout: float = 2.0,
) -> AgentRegistry:
    """Build an AgentRegistry from configured agents.

    Without configs the built-in agent set is registered.
    """
    from ..yaml_config import default_agent_configs

    credentials = credentials or EnvCredentialStore()
    registry = AgentRegistry()
    for name, cfg in (agent_configs or default_agent_configs()).items():
        try:
            registry.register(name, _make_factory(cfg, credentials, grace_period, kill_timeout))
        except ValueError as exc:
            logger.warning("%s - skipping", exc)
    return registry
