"""Credential lookup for agent backends.

Backends only need ``get_token(vendor)``; the vault behind it is not this
package's concern. ``EnvCredentialStore`` is the default: environment
variable first, then a per-vendor JSON file under the data directory.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

VENDOR_ENV_VARS: dict[str, str] = {
    "cursor": "CURSOR_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "nim": "NIM_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}


class CredentialStore(Protocol):
    def get_token(self, vendor: str) -> str | None: ...

    def store_token(self, vendor: str, token: str) -> None: ...


class EnvCredentialStore:
    """Environment variables backed by ``<base_dir>/credentials/*.json``."""

    def __init__(
        self,
        base_dir: str | Path | None = None,
        env_vars: dict[str, str] | None = None,
    ) -> None:
        self._dir = Path(base_dir or Path.home() / ".agentrelay") / "credentials"
        self._env_vars = {**VENDOR_ENV_VARS, **(env_vars or {})}

    def _path(self, vendor: str) -> Path:
        return self._dir / f"{vendor}.json"

    def get_token(self, vendor: str) -> str | None:
        env_name = self._env_vars.get(vendor)
        if env_name:
            value = os.environ.get(env_name, "").strip()
            if value:
                return value

        path = self._path(vendor)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable credential file %s: %s", path, exc)
            return None
        if isinstance(data, dict):
            token = data.get("token") or data.get("apiKey")
            if isinstance(token, str) and token.strip():
                return token.strip()
        return None

    def store_token(self, vendor: str, token: str) -> None:
        path = self._path(vendor)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"token": token}, f)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        logger.info("Stored credential vendor=%s path=%s", vendor, path)
