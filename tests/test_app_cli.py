from __future__ import annotations

import sys
from unittest.mock import patch

import pytest

from agentrelay import app


def test_resolve_config_prefers_explicit_then_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))

    assert app._resolve_config_path("/etc/relay.yaml") == "/etc/relay.yaml"
    assert app._resolve_config_path(None) is None

    (tmp_path / "agentrelay.yaml").write_text("agents: {}\n")
    assert app._resolve_config_path(None) == str(tmp_path / "agentrelay.yaml")


def test_agents_command_lists_readiness(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("RELAY_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("NIM_API_KEY", "nim-key")
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    config = tmp_path / "relay.yaml"
    config.write_text(
        "agents:\n"
        "  nim:\n"
        "    type: nim\n"
        "  cursor:\n"
        "    type: cursor\n"
    )

    with patch.object(sys, "argv", ["agentrelay", "--config", str(config), "agents"]):
        app.main()

    out = capsys.readouterr().out
    assert "nim     ready" in out
    assert "cursor  not ready" in out


def test_no_command_prints_help_and_exits(monkeypatch):
    with patch.object(sys, "argv", ["agentrelay"]):
        with pytest.raises(SystemExit) as exc_info:
            app.main()
    assert exc_info.value.code == 2
