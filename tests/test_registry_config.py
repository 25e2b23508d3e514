"""Tests for configuration loading, credentials and the agent registry."""
from __future__ import annotations

import pytest

from agentrelay.engine.backends import AgentRegistry, build_agent_registry
from agentrelay.engine.backends.aider import AiderBackend
from agentrelay.engine.backends.base import Backend
from agentrelay.engine.backends.nim import NimBackend
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.credentials import EnvCredentialStore
from agentrelay.engine.errors import ConfigurationError, UnknownAgentError
from agentrelay.engine.models import SessionConfig
from agentrelay.engine.yaml_config import AgentConfig, load_yaml_config


# ── RelayConfig ──


def test_relay_config_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    config = RelayConfig()
    assert config.port == 3006
    assert config.session_timeout_seconds == 30.0
    assert config.machine_timeout_seconds == 45.0
    assert config.db_path.endswith("relay.db")


def test_relay_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("RELAY_PORT", "4100")
    monkeypatch.setenv("RELAY_ACCESS_TOKEN", "secret")
    monkeypatch.setenv("RELAY_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("RELAY_KILL_GRACE", "0.5")

    config = RelayConfig.from_env()
    assert config.port == 4100
    assert config.access_token == "secret"
    assert config.db_path == str(tmp_path / "relay.db")
    assert config.kill_grace_seconds == 0.5


# ── YAML ──


def test_load_yaml_without_file_uses_builtin_agents(tmp_path):
    loaded = load_yaml_config(None, RelayConfig(data_dir=str(tmp_path)))
    assert {"openrouter", "nim", "glm", "minimax", "cursor", "aider", "claude"} <= set(loaded.agents)
    assert loaded.agents["minimax"].model == "minimaxai/minimax-m2.1"


def test_load_yaml_overrides_server_and_agents(tmp_path, monkeypatch):
    monkeypatch.setenv("MY_MODEL", "openai/gpt-5")
    path = tmp_path / "agentrelay.yaml"
    path.write_text(
        "server:\n"
        "  port: 4000\n"
        "  sse_heartbeat_seconds: 5\n"
        "  bogus_key: 1\n"
        "agents:\n"
        "  fast:\n"
        "    type: openrouter\n"
        "    model: ${MY_MODEL}\n"
        "  weird:\n"
        "    type: telepathy\n"
    )
    loaded = load_yaml_config(path, RelayConfig(data_dir=str(tmp_path)))

    assert loaded.server.port == 4000
    assert loaded.server.sse_heartbeat_seconds == 5.0
    assert list(loaded.agents) == ["fast"]
    assert loaded.agents["fast"].model == "openai/gpt-5"


def test_load_yaml_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml", RelayConfig(data_dir=str(tmp_path)))


# ── Credentials ──


def test_env_credentials_prefer_env_then_file(tmp_path, monkeypatch):
    monkeypatch.delenv("NIM_API_KEY", raising=False)
    store = EnvCredentialStore(tmp_path)
    assert store.get_token("nim") is None

    store.store_token("nim", "from-file")
    assert store.get_token("nim") == "from-file"
    assert (tmp_path / "credentials" / "nim.json").stat().st_mode & 0o777 == 0o600

    monkeypatch.setenv("NIM_API_KEY", "from-env")
    assert store.get_token("nim") == "from-env"


# ── Registry ──


class _StubBackend(Backend):
    @property
    def name(self) -> str:
        return "stub"

    async def initialize(self) -> None:
        return None

    async def _run_turn(self, session, user_text, handle, emit):
        return user_text


def test_registries_are_independent_instances():
    first = AgentRegistry()
    second = AgentRegistry()
    first.register("stub", _StubBackend)

    assert first.list_names() == ["stub"]
    assert second.list_names() == []
    assert first.get("stub") is first.get("stub")
    assert first.create("stub") is not first.get("stub")


def test_unknown_agent_lists_available():
    registry = AgentRegistry()
    registry.register("stub", _StubBackend)
    with pytest.raises(UnknownAgentError) as exc_info:
        registry.get("ghost")
    assert "stub" in str(exc_info.value)
    with pytest.raises(UnknownAgentError):
        registry.bind_session("s1", "ghost")


def test_session_binding_resolves_backend():
    registry = AgentRegistry()
    registry.register("stub", _StubBackend)
    registry.bind_session("s1", "stub")

    assert registry.agent_for("s1") == "stub"
    assert registry.resolve("s1") is registry.get("stub")
    registry.unbind_session("s1")
    assert registry.resolve("s1") is None


@pytest.mark.asyncio
async def test_shutdown_all_disconnects_built_backends():
    registry = AgentRegistry()
    registry.register("stub", _StubBackend)
    backend = registry.get("stub")
    await backend.new_session(SessionConfig(cwd="."))

    await registry.shutdown_all()
    assert backend.session_ids() == []


def test_build_registry_from_configs(tmp_path, monkeypatch):
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    monkeypatch.setenv("MY_NIM_KEY", "nim-secret")
    registry = build_agent_registry(
        {
            "glm": AgentConfig(name="glm", type="nim", model="z-ai/glm4.7", api_key_env="MY_NIM_KEY"),
            "cursor": AgentConfig(name="cursor", type="cursor"),
            "aider": AgentConfig(name="aider", type="aider", options={"auto_commits": True}),
            "broken": AgentConfig(name="broken", type="nonsense"),
        },
        EnvCredentialStore(tmp_path),
        grace_period=0.5,
        kill_timeout=1.0,
    )

    assert registry.list_names() == ["glm", "cursor", "aider"]
    glm = registry.get("glm")
    assert isinstance(glm, NimBackend)
    assert glm.name == "glm"
    assert glm.api_key == "nim-secret"

    aider = registry.get("aider")
    assert isinstance(aider, AiderBackend)
    assert aider.auto_commits is True
    assert aider.grace_period == 0.5

    with pytest.raises(ConfigurationError):
        registry.get("cursor")
    assert registry.availability_report()["cursor"] is False
