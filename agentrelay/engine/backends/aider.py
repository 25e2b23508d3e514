"""Aider backend.

Aider has no structured output mode. Each turn runs ``aider --message``
non-interactively with colors and pretty output disabled, and the
terminal text is classified by ``TerminalTextParser``.
"""
from __future__ import annotations

import logging
import os
import tempfile
import uuid
from pathlib import Path

from ..credentials import CredentialStore
from ..errors import ConfigurationError, TransportError
from ..models import AgentMessage, Session
from ..parsers.terminal import TerminalTextParser
from ..supervisor import ExitOutcome
from ..turn import TurnCancelled, TurnHandle
from .base import BackendCapabilities, TurnEmitter
from .cli import CliBackend

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openrouter/anthropic/claude-sonnet-4"
# Longer messages go through --message-file to stay clear of argv limits.
MESSAGE_ARG_LIMIT = 2000
TEMP_DIR = Path(tempfile.gettempdir()) / "agentrelay-aider"


class AiderBackend(CliBackend):
    command_fallback = "aider"
    install_hint = "aider (pip install aider-chat)"

    def __init__(
        self,
        *,
        model: str | None = None,
        openrouter_api_key: str | None = None,
        credentials: CredentialStore | None = None,
        yes_always: bool = True,
        stream: bool = True,
        auto_commits: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.default_model = model or DEFAULT_MODEL
        self._openrouter_api_key = openrouter_api_key
        self._credentials = credentials
        self.yes_always = yes_always
        self.stream_output = stream
        self.auto_commits = auto_commits

    @property
    def name(self) -> str:
        return "aider"

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(streams_text=self.stream_output, streams_reasoning=True)

    @property
    def openrouter_api_key(self) -> str | None:
        if self._openrouter_api_key:
            return self._openrouter_api_key
        if self._credentials is not None:
            return self._credentials.get_token("openrouter")
        return None

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        env.update({"CI": "1", "TERM": "dumb", "NO_COLOR": "1", "FORCE_COLOR": "0"})
        if self.openrouter_api_key:
            env["OPENROUTER_API_KEY"] = self.openrouter_api_key
        return env

    async def initialize(self) -> None:
        returncode, output = await self.run_version_check()
        # Some aider builds exit non-zero on --version but still print it.
        if returncode != 0 and "aider" not in output.lower():
            raise ConfigurationError(
                f"'{self.command}' CLI",
                f"'{self.command} --version' exited with {returncode}: {output[:200]}",
            )

    def build_args(self, session: Session, message: str, message_file: Path | None) -> list[str]:
        if message_file is not None:
            args = ["--message-file", str(message_file)]
        else:
            args = ["--message", message]
        if self.yes_always:
            args.append("--yes-always")
        args.append("--stream" if self.stream_output else "--no-stream")
        model = session.model or self.default_model
        if model:
            args.extend(["--model", model])
        args.append("--auto-commits" if self.auto_commits else "--no-auto-commits")
        args.extend(["--no-pretty", "--no-suggest-shell-commands"])
        return args

    def _write_message_file(self, message: str) -> Path:
        TEMP_DIR.mkdir(parents=True, exist_ok=True)
        path = TEMP_DIR / f"msg-{uuid.uuid4().hex[:12]}.txt"
        path.write_text(message, encoding="utf-8")
        logger.debug("aider message file %s (%d chars)", path, len(message))
        return path

    async def _run_turn(
        self,
        session: Session,
        user_text: str,
        handle: TurnHandle,
        emit: TurnEmitter,
    ) -> str | None:
        message_file = None
        if len(user_text) >= MESSAGE_ARG_LIMIT:
            message_file = self._write_message_file(user_text)
        try:
            pending: list[AgentMessage] = []
            parser = TerminalTextParser(pending.append)
            supervisor = self.make_supervisor(
                session, self.build_args(session, user_text, message_file),
            )

            async def on_stdout(chunk: str) -> None:
                parser.handle_chunk(chunk)
                await emit.drain(pending)

            try:
                outcome = await supervisor.run(handle, on_stdout, parser.handle_stderr)
            except TransportError as exc:
                if handle.cancelled:
                    raise
                parser.finalize()
                await emit.drain(pending)
                if parser.last_error and parser.last_error not in str(exc):
                    raise TransportError(
                        f"{exc}\naider: {parser.last_error}", exit_code=exc.exit_code,
                    ) from exc
                raise
            if outcome is ExitOutcome.CANCELLED:
                raise TurnCancelled()
            parser.finalize()
            await emit.drain(pending)
            return parser.transcript.strip()
        finally:
            if message_file is not None:
                try:
                    os.unlink(message_file)
                except OSError:
                    logger.debug("Could not remove %s", message_file)
