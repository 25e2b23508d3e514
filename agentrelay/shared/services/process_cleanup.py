"""Best-effort cleanup for stale agent CLI subprocesses.

Targets ``cursor-agent`` and ``aider`` processes that a previous relay
server spawned but that outlived it (server crashed before its atexit
hook ran, or the process group was detached).
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

_MANAGED_PATTERNS = (
    r"\bcursor-agent\b.*--output-format\s+stream-json\b",
    r"\baider\b.*--yes-always\b",
)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def parse_process_table(out: str) -> dict[int, ProcessInfo]:
    """Parse ``ps -eo pid=,ppid=,args=`` output keyed by PID."""
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _list_processes() -> dict[int, ProcessInfo]:
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return parse_process_table(out)


def _has_relay_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when the process still belongs to a live relay server."""
    cur = proc
    for _ in range(32):
        if cur.pid == current_pid:
            return True
        if "agentrelay serve" in cur.args:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
    return False


def is_managed_candidate(args: str) -> bool:
    return any(re.search(pat, args) for pat in _MANAGED_PATTERNS)


def find_stale_processes(
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> list[ProcessInfo]:
    """Managed, orphaned processes with no relay server ancestry."""
    stale: list[ProcessInfo] = []
    for proc in table.values():
        if proc.pid == current_pid or not is_managed_candidate(proc.args):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan or _has_relay_ancestor(proc, table, current_pid):
            continue
        stale.append(proc)
    return stale


def cleanup_stale_runtime_processes(
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned agent CLI processes. Returns how many were signalled."""
    pid = current_pid or os.getpid()
    logger = log or (lambda _: None)
    killed = 0

    for proc in find_stale_processes(_list_processes(), pid):
        try:
            os.kill(proc.pid, signal.SIGTERM)
            killed += 1
            logger(
                f"Reaped stale agent process pid={proc.pid} "
                f"ppid={proc.ppid} cmd={proc.args[:180]}"
            )
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Failed to reap stale process pid={proc.pid}: {exc}")

    return killed
