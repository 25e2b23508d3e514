"""Heuristic parser for terminal-text agent output (Aider).

Aider has no structured protocol, so complete lines are classified by a
fixed set of recognizers and fed through a small state machine. The
contract is to never lose output text; misclassification is acceptable.

States and transitions (see ``TRANSITIONS``)::

    NORMAL          --search_start-->  IN_DIFF_SEARCH
    IN_DIFF_SEARCH  --divider------->  IN_DIFF_REPLACE
    IN_DIFF_REPLACE --replace_end--->  NORMAL
    any             --file_header--->  NORMAL  (unterminated diff closed)
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Callable

from ..models import (
    ErrorMessage,
    ReasoningMessage,
    TextMessage,
    ToolCallMessage,
    ToolResultMessage,
    ToolStatus,
)
from .base import MessageSink, StreamParser

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")


class ParserState(str, Enum):
    NORMAL = "normal"
    IN_DIFF_SEARCH = "in_diff_search"
    IN_DIFF_REPLACE = "in_diff_replace"


class LineKind(str, Enum):
    FILE_HEADER = "file_header"
    SEARCH_START = "search_start"
    DIVIDER = "divider"
    REPLACE_END = "replace_end"
    THINKING = "thinking"
    ERROR = "error"
    ADDED_TO_CHAT = "added_to_chat"
    APPLIED_EDIT = "applied_edit"
    CREATED_FILE = "created_file"
    COMMIT = "commit"
    OTHER = "other"


# Checked in order; the first match wins.
RECOGNIZERS: list[tuple[LineKind, re.Pattern[str]]] = [
    (LineKind.FILE_HEADER, re.compile(r"^[─━]+\s*(.+?)\s*[─━]+$")),
    (LineKind.SEARCH_START, re.compile(r"^<{5,}\s*SEARCH\s*$", re.IGNORECASE)),
    (LineKind.DIVIDER, re.compile(r"^={5,}$")),
    (LineKind.REPLACE_END, re.compile(r"^>{5,}\s*REPLACE\s*$", re.IGNORECASE)),
    (LineKind.THINKING, re.compile(
        r"^(Thinking|Processing|Analyzing|Searching|Reading)\s*\.{0,3}$",
        re.IGNORECASE,
    )),
    (LineKind.ERROR, re.compile(r"^Error:\s*(.+)$", re.IGNORECASE)),
    (LineKind.ADDED_TO_CHAT, re.compile(r"^Added\s+(.+?)\s+to the chat", re.IGNORECASE)),
    (LineKind.APPLIED_EDIT, re.compile(r"^Applied\s+edit\s+to\s+(.+)", re.IGNORECASE)),
    (LineKind.CREATED_FILE, re.compile(r"^Created\s+new\s+file\s+(.+)", re.IGNORECASE)),
    (LineKind.COMMIT, re.compile(r"^Commit\s+([0-9a-f]{7,40})\s+(.+)$", re.IGNORECASE)),
]

# Kinds that end a diff section. Everything else inside a diff is content.
_DIFF_CONTROL = {
    ParserState.IN_DIFF_SEARCH: {LineKind.DIVIDER, LineKind.FILE_HEADER},
    ParserState.IN_DIFF_REPLACE: {LineKind.REPLACE_END, LineKind.FILE_HEADER},
}

# Single-line banners reported as an immediately completed tool call.
_BANNER_TOOLS = {
    LineKind.ADDED_TO_CHAT: "add_to_chat",
    LineKind.APPLIED_EDIT: "apply_edit",
    LineKind.CREATED_FILE: "create_file",
    LineKind.COMMIT: "git_commit",
}


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def classify(line: str) -> tuple[LineKind, re.Match[str] | None]:
    stripped = line.strip()
    for kind, pattern in RECOGNIZERS:
        match = pattern.match(stripped)
        if match:
            return kind, match
    return LineKind.OTHER, None


class TerminalTextParser(StreamParser):
    def __init__(self, on_message: MessageSink, *, id_prefix: str = "aider-tool") -> None:
        super().__init__(on_message)
        self._id_prefix = id_prefix
        self._tool_counter = 0
        self.state = ParserState.NORMAL
        self.current_file: str | None = None
        # (id, name) of the tool call awaiting its result
        self._open_call: tuple[str, str] | None = None
        self._search_lines: list[str] = []
        self._replace_lines: list[str] = []
        self._transcript: list[str] = []
        self._stderr_buffer = ""
        self.last_error: str | None = None

    @property
    def transcript(self) -> str:
        """All stdout with ANSI codes removed."""
        return "".join(self._transcript)

    # ── Line handling ──

    def _process_line(self, raw: str) -> None:
        line = strip_ansi(raw)
        self._transcript.append(line + "\n")
        kind, match = classify(line)

        if self.state in _DIFF_CONTROL and kind not in _DIFF_CONTROL[self.state]:
            if self.state is ParserState.IN_DIFF_SEARCH:
                self._search_lines.append(line)
            else:
                self._replace_lines.append(line)
            return

        handler = TRANSITIONS.get((self.state, kind)) or TRANSITIONS[(None, kind)]
        handler(self, line, match)

    def _next_id(self) -> str:
        self._tool_counter += 1
        return f"{self._id_prefix}-{self._tool_counter}"

    def _open(self, name: str, tool_input: dict) -> str:
        self._close_open_call(ToolStatus.COMPLETED)
        tool_id = self._next_id()
        self._open_call = (tool_id, name)
        self.emit(ToolCallMessage(
            id=tool_id, name=name, input=tool_input, status=ToolStatus.IN_PROGRESS,
        ))
        return tool_id

    def _close_open_call(self, status: ToolStatus, output: object = None) -> None:
        if self._open_call is None:
            return
        tool_id, name = self._open_call
        self._open_call = None
        if output is None:
            output = {"path": self.current_file}
        self.emit(ToolResultMessage(id=tool_id, output=output, status=status))

    def _diff_output(self) -> dict:
        return {
            "file": self.current_file,
            "search": "\n".join(self._search_lines),
            "replace": "\n".join(self._replace_lines),
        }

    def _finish_diff(self, status: ToolStatus) -> None:
        self._close_open_call(status, self._diff_output())
        self._search_lines = []
        self._replace_lines = []
        self.state = ParserState.NORMAL

    # ── Transition actions ──

    def _on_file_header(self, line: str, match: re.Match[str]) -> None:
        if self.state is not ParserState.NORMAL:
            self._finish_diff(ToolStatus.FAILED)
        self.current_file = match.group(1).strip()
        self._open("file_read", {"path": self.current_file})

    def _on_search_start(self, line: str, match: re.Match[str]) -> None:
        self._open("file_edit", {"path": self.current_file})
        self._search_lines = []
        self._replace_lines = []
        self.state = ParserState.IN_DIFF_SEARCH

    def _on_divider(self, line: str, match: re.Match[str]) -> None:
        self.state = ParserState.IN_DIFF_REPLACE

    def _on_replace_end(self, line: str, match: re.Match[str]) -> None:
        self._finish_diff(ToolStatus.COMPLETED)

    def _on_thinking(self, line: str, match: re.Match[str]) -> None:
        self.emit(ReasoningMessage(text=line.strip()))

    def _on_error(self, line: str, match: re.Match[str]) -> None:
        self.last_error = match.group(1).strip()
        self.emit(ErrorMessage(message=self.last_error))

    def _on_banner(self, line: str, match: re.Match[str]) -> None:
        kind, _ = classify(line)
        name = _BANNER_TOOLS[kind]
        if kind is LineKind.COMMIT:
            tool_input = {"commit": match.group(1), "message": match.group(2).strip()}
        else:
            tool_input = {"path": match.group(1).strip()}
            self.current_file = tool_input["path"]
        self._close_open_call(ToolStatus.COMPLETED)
        tool_id = self._next_id()
        self.emit(ToolCallMessage(
            id=tool_id, name=name, input=tool_input, status=ToolStatus.IN_PROGRESS,
        ))
        self.emit(ToolResultMessage(
            id=tool_id, output=tool_input, status=ToolStatus.COMPLETED,
        ))
        self._on_text(line, match)

    def _on_text(self, line: str, match: re.Match[str] | None) -> None:
        if line.strip():
            self.emit(TextMessage(text=line + "\n"))

    # ── stderr and end of stream ──

    def handle_stderr(self, chunk: str) -> None:
        """Record fatal-looking stderr lines without emitting them."""
        self._stderr_buffer += chunk
        lines = self._stderr_buffer.split("\n")
        self._stderr_buffer = lines.pop()
        for raw in lines:
            self._scan_stderr_line(raw)

    def _scan_stderr_line(self, raw: str) -> None:
        line = strip_ansi(raw).strip()
        kind, match = classify(line)
        if kind is LineKind.ERROR:
            self.last_error = match.group(1).strip()
        elif line:
            logger.debug("aider stderr: %s", line)

    def _flush(self) -> None:
        if self._stderr_buffer.strip():
            self._scan_stderr_line(self._stderr_buffer)
        self._stderr_buffer = ""
        if self.state is not ParserState.NORMAL:
            logger.debug("Unterminated diff block for %s", self.current_file)
            self._finish_diff(ToolStatus.FAILED)
        self._close_open_call(ToolStatus.COMPLETED)


Action = Callable[[TerminalTextParser, str, "re.Match[str] | None"], None]

# (state, kind) -> action. A ``None`` state is the fallback for any state.
TRANSITIONS: dict[tuple[ParserState | None, LineKind], Action] = {
    (None, LineKind.FILE_HEADER): TerminalTextParser._on_file_header,
    (ParserState.NORMAL, LineKind.SEARCH_START): TerminalTextParser._on_search_start,
    (ParserState.IN_DIFF_SEARCH, LineKind.DIVIDER): TerminalTextParser._on_divider,
    (ParserState.IN_DIFF_REPLACE, LineKind.REPLACE_END): TerminalTextParser._on_replace_end,
    (None, LineKind.THINKING): TerminalTextParser._on_thinking,
    (None, LineKind.ERROR): TerminalTextParser._on_error,
    (None, LineKind.ADDED_TO_CHAT): TerminalTextParser._on_banner,
    (None, LineKind.APPLIED_EDIT): TerminalTextParser._on_banner,
    (None, LineKind.CREATED_FILE): TerminalTextParser._on_banner,
    (None, LineKind.COMMIT): TerminalTextParser._on_banner,
    (None, LineKind.SEARCH_START): TerminalTextParser._on_text,
    (None, LineKind.DIVIDER): TerminalTextParser._on_text,
    (None, LineKind.REPLACE_END): TerminalTextParser._on_text,
    (None, LineKind.OTHER): TerminalTextParser._on_text,
}
