"""YAML configuration loader.

Loads the optional relay YAML file. When no file is given the
environment (``RelayConfig.from_env``) and the built-in agent set are
used unchanged.

Example YAML:
    server:
      host: 0.0.0.0
      port: 3006
      sse_heartbeat_seconds: 30

    agents:
      openrouter:
        type: openrouter
        model: anthropic/claude-sonnet-4
      glm:
        type: nim
        model: z-ai/glm4.7
      cursor:
        type: cursor
        command: cursor-agent
        options:
          force: true
      aider:
        type: aider
        options:
          auto_commits: false
          stream: true
      claude:
        type: claude
        api_key_env: ANTHROPIC_API_KEY
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .backends.nim import GLM_MODEL, MINIMAX_MODEL
from .config import RelayConfig

logger = logging.getLogger(__name__)

AGENT_TYPES = ("openrouter", "nim", "cursor", "aider", "claude")


@dataclass
class AgentConfig:
    """Configuration for a single agent backend."""
    name: str
    type: str  # one of AGENT_TYPES
    model: str | None = None
    command: str | None = None  # for cursor/aider: path to CLI binary
    api_key_env: str | None = None
    api_url: str | None = None  # for openrouter/nim: endpoint override
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class RelayYamlConfig:
    """Complete parsed YAML configuration."""
    server: RelayConfig
    agents: dict[str, AgentConfig]


def default_agent_configs() -> dict[str, AgentConfig]:
    """Agents available when no YAML file declares any."""
    return {
        "openrouter": AgentConfig(name="openrouter", type="openrouter"),
        "nim": AgentConfig(name="nim", type="nim"),
        "glm": AgentConfig(name="glm", type="nim", model=GLM_MODEL),
        "minimax": AgentConfig(name="minimax", type="nim", model=MINIMAX_MODEL),
        "cursor": AgentConfig(name="cursor", type="cursor"),
        "aider": AgentConfig(name="aider", type="aider"),
        "claude": AgentConfig(name="claude", type="claude"),
    }


def _expand(value: Any) -> Any:
    """Substitute ${VAR} references in string values."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _parse_server(raw: dict[str, Any], base: RelayConfig) -> RelayConfig:
    known = {f.name for f in fields(RelayConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning("Ignoring unknown server keys: %s", ", ".join(unknown))
    values = {f.name: getattr(base, f.name) for f in fields(RelayConfig)}
    for key, value in raw.items():
        if key not in known:
            continue
        current = values[key]
        if isinstance(current, bool):
            values[key] = bool(value)
        elif isinstance(current, int):
            values[key] = int(value)
        elif isinstance(current, float):
            values[key] = float(value)
        else:
            values[key] = str(_expand(value))
    if "data_dir" in raw and "db_path" not in raw:
        values["db_path"] = ""
    return RelayConfig(**values)


def parse_agents(raw: dict[str, Any]) -> dict[str, AgentConfig]:
    agents: dict[str, AgentConfig] = {}
    for name, cfg in (raw or {}).items():
        cfg = _expand(cfg or {})
        agent_type = cfg.get("type", name)
        if agent_type not in AGENT_TYPES:
            logger.warning(
                "Skipping agent %s: unknown type %r (expected one of %s)",
                name, agent_type, ", ".join(AGENT_TYPES),
            )
            continue
        agents[name] = AgentConfig(
            name=name,
            type=agent_type,
            model=cfg.get("model"),
            command=cfg.get("command"),
            api_key_env=cfg.get("api_key_env"),
            api_url=cfg.get("api_url"),
            options=dict(cfg.get("options") or {}),
        )
    return agents


def load_yaml_config(
    path: str | Path | None,
    base: RelayConfig | None = None,
) -> RelayYamlConfig:
    """Load and parse a YAML config file.

    Values in the ``server`` section override *base* (normally the env
    config). An empty or missing ``agents`` section falls back to the
    built-in agent set.
    """
    base = base or RelayConfig.from_env()
    if path is None:
        return RelayYamlConfig(server=base, agents=default_agent_configs())

    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s - sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    server = _parse_server(raw.get("server") or {}, base)
    agents = parse_agents(raw.get("agents") or {})
    if not agents:
        agents = default_agent_configs()
    return RelayYamlConfig(server=server, agents=agents)
