"""Stream parser interface.

A parser turns one vendor's raw output into normalized AgentMessages.
``handle_chunk`` is fed decoded text as it arrives and must never raise;
``finalize`` is called exactly once at end of stream.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

from ..models import AgentMessage

logger = logging.getLogger(__name__)

MessageSink = Callable[[AgentMessage], None]


class StreamParser(ABC):
    def __init__(self, on_message: MessageSink) -> None:
        self._on_message = on_message
        self._buffer = ""
        self._finalized = False

    def emit(self, message: AgentMessage) -> None:
        self._on_message(message)

    def handle_chunk(self, chunk: str) -> None:
        """Buffer *chunk* and process every completed line."""
        if self._finalized:
            logger.debug("%s: chunk after finalize ignored", type(self).__name__)
            return
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            self._process_line_safely(line.rstrip("\r"))

    def finalize(self) -> None:
        """Flush the partial last line and any deferred output."""
        if self._finalized:
            return
        self._finalized = True
        remaining, self._buffer = self._buffer, ""
        if remaining.strip():
            self._process_line_safely(remaining.rstrip("\r"))
        try:
            self._flush()
        except Exception:
            logger.exception("%s: flush failed", type(self).__name__)

    @property
    def remaining(self) -> str:
        """Buffered text not yet terminated by a newline."""
        return self._buffer

    def _process_line_safely(self, line: str) -> None:
        try:
            self._process_line(line)
        except Exception:
            logger.warning(
                "%s: skipped unprocessable line: %.200s",
                type(self).__name__, line, exc_info=True,
            )

    @abstractmethod
    def _process_line(self, line: str) -> None:
        """Handle one complete line (without its newline)."""

    def _flush(self) -> None:
        """Emit deferred output at end of stream."""
