"""Shared base for backends that spawn an agent CLI per turn."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Iterable

from ..errors import ConfigurationError
from ..models import Session
from ..supervisor import DEFAULT_CANCEL_EXIT_CODES, ProcessSupervisor
from .base import Backend

logger = logging.getLogger(__name__)


class CliBackend(Backend):
    command_fallback: str = ""
    install_hint: str = ""
    version_timeout: float = 10.0

    def __init__(
        self,
        *,
        command: str | None = None,
        grace_period: float = 2.0,
        kill_timeout: float = 2.0,
        cancel_exit_codes: Iterable[int] = DEFAULT_CANCEL_EXIT_CODES,
    ) -> None:
        super().__init__()
        self._command = self.resolve_command(command, self.command_fallback)
        self.grace_period = grace_period
        self.kill_timeout = kill_timeout
        self.cancel_exit_codes = frozenset(cancel_exit_codes)
        self.disconnect_timeout = grace_period + kill_timeout + 1.0

    @property
    def command(self) -> str:
        return self._command

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def build_env(self) -> dict[str, str]:
        """Environment for the CLI process. Subclasses add credentials."""
        return dict(os.environ)

    async def run_version_check(self) -> tuple[int, str]:
        """Run ``<command> --version`` and return (returncode, output)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self.build_env(),
            )
        except OSError as exc:
            raise ConfigurationError(
                f"'{self._command}' CLI", f"Install {self.install_hint} first ({exc.strerror or exc})."
            ) from exc
        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=self.version_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ConfigurationError(
                f"'{self._command}' CLI",
                f"'{self._command} --version' did not finish in {self.version_timeout:.0f}s.",
            )
        text = output.decode("utf-8", errors="replace").strip()
        logger.info("%s version check rc=%s output=%s", self.name, proc.returncode, text[:120])
        return proc.returncode, text

    def make_supervisor(
        self,
        session: Session,
        args: list[str],
        *,
        stdin_payload: str | None = None,
    ) -> ProcessSupervisor:
        return ProcessSupervisor(
            self._command,
            args,
            cwd=session.config.cwd,
            env=self.build_env(),
            spawn_name=os.path.basename(self._command),
            install_hint=self.install_hint,
            grace_period=self.grace_period,
            kill_timeout=self.kill_timeout,
            cancel_exit_codes=self.cancel_exit_codes,
            stdin_payload=stdin_payload,
        )
