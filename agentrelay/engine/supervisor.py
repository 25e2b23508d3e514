"""Child process supervision for CLI-backed agent turns.

One ``ProcessSupervisor`` owns one agent CLI process for the duration of
one turn. It pumps stdout and stderr to the backend's callbacks, turns a
cancellation of the turn into SIGTERM followed by SIGKILL, and makes
sure no child outlives the turn or the interpreter.
"""
from __future__ import annotations

import asyncio
import atexit
import codecs
import collections
import logging
import os
import signal
from enum import Enum
from typing import Any, Callable, Iterable

from .config import fire_event
from .errors import ProcessSpawnError, TransportError
from .turn import TurnHandle

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_EXIT_CODES = frozenset({130, 137, 143})
DEFAULT_CANCEL_SIGNALS = frozenset({signal.SIGTERM, signal.SIGKILL})

ChunkCallback = Callable[[str], Any]

# Children still running, force-killed if the interpreter exits first.
_live_processes: set[asyncio.subprocess.Process] = set()
_exit_hook_registered = False


def _kill_live_processes() -> None:
    for proc in list(_live_processes):
        if proc.returncode is None:
            logger.warning("Killing orphaned agent process pid=%d at exit", proc.pid)
            _send_signal(proc, signal.SIGKILL)
    _live_processes.clear()


def _ensure_exit_hook() -> None:
    global _exit_hook_registered
    if not _exit_hook_registered:
        atexit.register(_kill_live_processes)
        _exit_hook_registered = True


def _send_signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the child's process group, or the child alone off POSIX."""
    if proc.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


def live_process_count() -> int:
    return len(_live_processes)


class ExitOutcome(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"


class ProcessSupervisor:
    """Run one agent CLI invocation under a turn's cancellation handle."""

    def __init__(
        self,
        command: str,
        args: Iterable[str] = (),
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        spawn_name: str | None = None,
        install_hint: str | None = None,
        grace_period: float = 5.0,
        kill_timeout: float = 2.0,
        cancel_exit_codes: Iterable[int] = DEFAULT_CANCEL_EXIT_CODES,
        cancel_signals: Iterable[int] = DEFAULT_CANCEL_SIGNALS,
        stdin_payload: str | None = None,
        keep_stdin_open: bool = False,
        drain_timeout: float = 1.0,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self.env = env
        self.spawn_name = spawn_name or os.path.basename(command)
        self.install_hint = install_hint or self.spawn_name
        self.grace_period = grace_period
        self.kill_timeout = kill_timeout
        self.cancel_exit_codes = frozenset(cancel_exit_codes)
        self.cancel_signals = frozenset(int(s) for s in cancel_signals)
        self.stdin_payload = stdin_payload
        self.keep_stdin_open = keep_stdin_open
        self.drain_timeout = drain_timeout
        self.process: asyncio.subprocess.Process | None = None
        self._escalation: asyncio.Task | None = None
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=40)

    @property
    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail).strip()

    async def run(
        self,
        handle: TurnHandle,
        on_stdout: ChunkCallback,
        on_stderr: ChunkCallback | None = None,
    ) -> ExitOutcome:
        """Spawn, pump output until exit, and classify the exit.

        Raises ``ProcessSpawnError`` when the binary cannot be started and
        ``TransportError`` for an exit that is neither success nor our own
        cancellation.
        """
        _ensure_exit_hook()
        wants_stdin = self.stdin_payload is not None or self.keep_stdin_open
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, *self.args,
                stdin=asyncio.subprocess.PIPE if wants_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            logger.error("Failed to spawn %s: %s", self.spawn_name, exc)
            raise ProcessSpawnError(
                self.spawn_name, exc.strerror or str(exc), self.install_hint,
            ) from exc

        self.process = proc
        _live_processes.add(proc)
        logger.info(
            "Spawned %s pid=%d cwd=%s args=%d",
            self.spawn_name, proc.pid, self.cwd, len(self.args),
        )

        def _on_cancel() -> None:
            if self._escalation is None and proc.returncode is None:
                self._escalation = asyncio.ensure_future(self._escalate(proc))

        handle.add_cancel_callback(_on_cancel)
        pumps: list[asyncio.Task] = []
        try:
            if self.stdin_payload is not None and proc.stdin is not None:
                proc.stdin.write(self.stdin_payload.encode("utf-8"))
                await proc.stdin.drain()
                if not self.keep_stdin_open:
                    proc.stdin.close()

            pumps = [
                asyncio.ensure_future(self._pump(proc.stdout, on_stdout)),
                asyncio.ensure_future(
                    self._pump(proc.stderr, on_stderr, self._stderr_tail)
                ),
            ]
            returncode = await self._wait_for_exit(proc, pumps, handle)
        finally:
            handle.remove_cancel_callback(_on_cancel)
            if proc.returncode is None:
                # Leaving early (callback error or our task cancelled).
                _send_signal(proc, signal.SIGKILL)
            for task in pumps:
                if not task.done():
                    task.cancel()
            if self._escalation is not None and not self._escalation.done():
                self._escalation.cancel()
            _live_processes.discard(proc)

        logger.info(
            "%s pid=%d exited rc=%s cancelled=%s",
            self.spawn_name, proc.pid, returncode, handle.cancelled,
        )
        return self.classify_exit(returncode, handle.cancelled)

    async def _wait_for_exit(
        self,
        proc: asyncio.subprocess.Process,
        pumps: list[asyncio.Task],
        handle: TurnHandle,
    ) -> int:
        waiter = asyncio.ensure_future(proc.wait())
        pending: set[asyncio.Future] = {waiter, *pumps}
        try:
            while not waiter.done():
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is not waiter and task.exception() is not None:
                        raise task.exception()
        finally:
            if not waiter.done():
                waiter.cancel()

        # Grandchildren that inherited the pipes can hold them open.
        if pending:
            timeout = self.kill_timeout if handle.cancelled else self.drain_timeout
            done, still_open = await asyncio.wait(pending, timeout=timeout)
            for task in still_open:
                logger.warning(
                    "%s pid=%d output still open %.1fs after exit, detaching",
                    self.spawn_name, proc.pid, timeout,
                )
                task.cancel()
            for task in done:
                if task.exception() is not None:
                    raise task.exception()
        return waiter.result()

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        callback: ChunkCallback | None,
        tail: collections.deque[str] | None = None,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(4096)
            text = decoder.decode(data, final=not data)
            if text:
                if tail is not None:
                    tail.append(text)
                if callback is not None:
                    await fire_event(callback, text)
            if not data:
                return

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL once the grace period runs out."""
        logger.info(
            "Cancelling %s pid=%d: SIGTERM, SIGKILL after %.1fs",
            self.spawn_name, proc.pid, self.grace_period,
        )
        _send_signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
            return
        except asyncio.TimeoutError:
            pass
        logger.warning(
            "%s pid=%d still running after %.1fs, sending SIGKILL",
            self.spawn_name, proc.pid, self.grace_period,
        )
        _send_signal(proc, signal.SIGKILL)

    def classify_exit(self, returncode: int, cancelled: bool) -> ExitOutcome:
        """Map an exit status to an outcome, raising for real failures.

        asyncio reports death by signal N as ``returncode == -N``.
        """
        if returncode == 0:
            return ExitOutcome.SUCCESS
        if returncode < 0:
            signum = -returncode
            if cancelled and signum in self.cancel_signals:
                return ExitOutcome.CANCELLED
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            raise TransportError(
                self._with_stderr(f"Process terminated with signal: {name}"),
                exit_code=returncode,
            )
        if cancelled and returncode in self.cancel_exit_codes:
            return ExitOutcome.CANCELLED
        raise TransportError(
            self._with_stderr(f"Process exited with code: {returncode}"),
            exit_code=returncode,
        )

    def _with_stderr(self, message: str) -> str:
        tail = self.stderr_tail
        if tail:
            return f"{message}\nstderr: {tail[-2000:]}"
        return message
