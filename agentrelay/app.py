"""agentrelay - main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _setup_logging(log_level: str, data_dir: str) -> Path:
    log_dir = Path(data_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentrelay.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _resolve_config_path(explicit: str | None) -> str | None:
    """Explicit --config, else ./agentrelay.yaml, else ~/.agentrelay/config.yaml."""
    logger = logging.getLogger(__name__)
    if explicit:
        return explicit
    candidates = [
        Path.cwd() / "agentrelay.yaml",
        Path.home() / ".agentrelay" / "config.yaml",
    ]
    for candidate in candidates:
        if candidate.exists():
            logger.info("Auto-discovered config: %s", candidate)
            return str(candidate)
    logger.info(
        "No config file found (tried %s); using defaults",
        ", ".join(str(c) for c in candidates),
    )
    return None


def _load(args):
    from agentrelay.engine.backends import build_agent_registry
    from agentrelay.engine.config import RelayConfig
    from agentrelay.engine.credentials import EnvCredentialStore
    from agentrelay.engine.yaml_config import load_yaml_config

    yaml_config = load_yaml_config(_resolve_config_path(args.config), RelayConfig.from_env())
    server = yaml_config.server
    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None) is not None:
        overrides["port"] = args.port
    if getattr(args, "db", None):
        overrides["db_path"] = args.db
    if getattr(args, "log_level", None):
        overrides["log_level"] = args.log_level
    if overrides:
        server = replace(server, **overrides)

    registry = build_agent_registry(
        yaml_config.agents,
        EnvCredentialStore(server.data_dir),
        grace_period=server.kill_grace_seconds,
        kill_timeout=server.kill_timeout_seconds,
    )
    return server, registry


def _serve(args) -> None:
    from agentrelay.server.server import RelayServer
    from agentrelay.shared.services.process_cleanup import (
        cleanup_stale_runtime_processes,
    )

    server_config, registry = _load(args)
    log_file = _setup_logging(server_config.log_level, server_config.data_dir)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting relay server host=%s port=%s db=%s log=%s",
        server_config.host, server_config.port, server_config.db_path, log_file,
    )
    try:
        reaped = cleanup_stale_runtime_processes(log=logger.info)
        if reaped:
            logger.warning("Reaped %d stale agent process(es) at startup", reaped)
    except Exception:
        logger.exception("Startup stale-process cleanup failed")

    server = RelayServer(server_config, registry)
    asyncio.run(server.start())


def _list_agents(args) -> None:
    _, registry = _load(args)
    report = registry.availability_report()
    if not report:
        print("No agents configured.")
        return
    width = max(len(name) for name in report)
    for name, ready in report.items():
        status = "ready" if ready else "not ready"
        print(f"  {name.ljust(width)}  {status}")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="agentrelay - multi-agent chat relay with live SSE sync",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for server settings and agents",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP + SSE server")
    serve.add_argument("--host", help="Bind address (default: RELAY_HOST or 127.0.0.1)")
    serve.add_argument("--port", type=int, help="Port (default: RELAY_PORT or 3006)")
    serve.add_argument("--db", metavar="PATH", help="SQLite database path")
    serve.add_argument(
        "--log-level", default=os.getenv("RELAY_LOG_LEVEL"),
        help="Logging level (default: INFO)",
    )

    sub.add_parser("agents", help="List configured agents and whether they are ready")

    args = parser.parse_args()
    if args.command == "serve":
        _serve(args)
    elif args.command == "agents":
        _list_agents(args)
    else:
        parser.print_help()
        sys.exit(2)


if __name__ == "__main__":
    main()
