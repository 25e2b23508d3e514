"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars.
"""
from __future__ import annotations

import inspect
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


async def fire_event(callback: Callable[[Any], Any] | None, event: Any) -> None:
    """Deliver an event to a sync or async callback.

    Unlike observation hooks, turn callbacks are part of the caller's
    contract, so errors propagate.
    """
    if callback is None:
        return
    result = callback(event)
    if inspect.isawaitable(result):
        await result


def _default_data_dir() -> str:
    return str(Path.home() / ".agentrelay")


@dataclass
class RelayConfig:
    """Relay server configuration."""

    host: str = "127.0.0.1"
    port: int = 3006
    # Shared secret for the HTTP API and /api/events. Empty means open.
    access_token: str = ""
    namespace: str = "default"
    data_dir: str = ""
    db_path: str = ""

    # SSE fan-out
    sse_heartbeat_seconds: float = 30.0
    sse_queue_size: int = 5000

    # Liveness expiry
    session_timeout_seconds: float = 30.0
    machine_timeout_seconds: float = 45.0
    expire_interval_seconds: float = 5.0

    # Process escalation on cancel: SIGTERM, then SIGKILL after the grace
    # period, then give up waiting after the kill timeout.
    kill_grace_seconds: float = 2.0
    kill_timeout_seconds: float = 2.0

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.data_dir:
            self.data_dir = _default_data_dir()
        if not self.db_path:
            self.db_path = str(Path(self.data_dir) / "relay.db")

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("RELAY_") and k != "RELAY_ACCESS_TOKEN"
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        config = cls(
            host=os.getenv("RELAY_HOST", cls.host),
            port=int(os.getenv("RELAY_PORT", str(cls.port))),
            access_token=os.getenv("RELAY_ACCESS_TOKEN", cls.access_token),
            namespace=os.getenv("RELAY_NAMESPACE", cls.namespace),
            data_dir=os.getenv("RELAY_DATA_DIR", ""),
            db_path=os.getenv("RELAY_DB_PATH", ""),
            sse_heartbeat_seconds=float(os.getenv(
                "RELAY_SSE_HEARTBEAT", str(cls.sse_heartbeat_seconds)
            )),
            sse_queue_size=int(os.getenv(
                "RELAY_SSE_QUEUE_SIZE", str(cls.sse_queue_size)
            )),
            session_timeout_seconds=float(os.getenv(
                "RELAY_SESSION_TIMEOUT", str(cls.session_timeout_seconds)
            )),
            machine_timeout_seconds=float(os.getenv(
                "RELAY_MACHINE_TIMEOUT", str(cls.machine_timeout_seconds)
            )),
            kill_grace_seconds=float(os.getenv(
                "RELAY_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            kill_timeout_seconds=float(os.getenv(
                "RELAY_KILL_TIMEOUT", str(cls.kill_timeout_seconds)
            )),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "RelayConfig.from_env: host=%s port=%d db=%s auth=%s",
            config.host, config.port, config.db_path,
            "token" if config.access_token else "open",
        )
        return config
