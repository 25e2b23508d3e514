"""Cursor backend.

Runs ``cursor-agent -p --output-format stream-json`` once per turn with
the user message as the last argument, and parses its NDJSON output.
"""
from __future__ import annotations

import logging

from ..credentials import CredentialStore
from ..errors import ConfigurationError, TransportError
from ..models import AgentMessage, PermissionMode, Session
from ..parsers.ndjson import NdjsonStreamParser
from ..supervisor import ExitOutcome
from ..turn import TurnCancelled, TurnHandle
from .base import BackendCapabilities, TurnEmitter
from .cli import CliBackend

logger = logging.getLogger(__name__)

CURSOR_KEY_HINT = (
    "Set CURSOR_API_KEY or store a cursor credential "
    "(~/.agentrelay/credentials/cursor.json)."
)


class CursorBackend(CliBackend):
    command_fallback = "cursor-agent"
    install_hint = "Cursor CLI (https://cursor.sh)"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        credentials: CredentialStore | None = None,
        auto_confirm: bool = True,
        model: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key
        self._credentials = credentials
        self.auto_confirm = auto_confirm
        if model:
            self.default_model = model

    @property
    def name(self) -> str:
        return "cursor"

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(streams_text=True, streams_reasoning=True)

    @property
    def api_key(self) -> str | None:
        if self._api_key:
            return self._api_key
        if self._credentials is not None:
            return self._credentials.get_token("cursor")
        return None

    def is_available(self) -> bool:
        return bool(self.api_key) and super().is_available()

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        if self.api_key:
            env["CURSOR_API_KEY"] = self.api_key
        return env

    async def initialize(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Cursor API key (CURSOR_API_KEY)", CURSOR_KEY_HINT)
        returncode, output = await self.run_version_check()
        if returncode != 0:
            raise ConfigurationError(
                f"'{self.command}' CLI",
                f"'{self.command} --version' exited with {returncode}: {output[:200]}",
            )

    def build_args(self, session: Session, message: str) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--stream-partial-output"]
        if self.auto_confirm or session.config.permission_mode is PermissionMode.BYPASS:
            args.append("--force")
        if session.model:
            args.extend(["--model", session.model])
        args.append(message)
        return args

    async def _run_turn(
        self,
        session: Session,
        user_text: str,
        handle: TurnHandle,
        emit: TurnEmitter,
    ) -> str | None:
        if not self.api_key:
            raise ConfigurationError("Cursor API key (CURSOR_API_KEY)", CURSOR_KEY_HINT)

        pending: list[AgentMessage] = []
        parser = NdjsonStreamParser(pending.append)
        supervisor = self.make_supervisor(session, self.build_args(session, user_text))

        async def on_stdout(chunk: str) -> None:
            parser.handle_chunk(chunk)
            await emit.drain(pending)

        try:
            outcome = await supervisor.run(handle, on_stdout)
        except TransportError:
            if not handle.cancelled:
                # Deliver what was already printed before the error event.
                parser.finalize()
                await emit.drain(pending)
            raise
        if outcome is ExitOutcome.CANCELLED:
            raise TurnCancelled()
        parser.finalize()
        await emit.drain(pending)
        if parser.stop_reason and parser.stop_reason != "end_turn":
            logger.info("cursor turn stop_reason=%s", parser.stop_reason)
        return parser.text
