"""Parser for OpenAI-compatible chat-completion SSE streams.

Frames look like ``data: {"choices":[{"delta":{"content":"He"}}]}`` and
the stream ends with ``data: [DONE]``. Whether text and reasoning are
forwarded per delta or once at end of stream is chosen by the backend.
"""
from __future__ import annotations

import json
import logging

from ..models import ReasoningMessage, TextMessage
from .base import MessageSink, StreamParser

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class ChatDeltaParser(StreamParser):
    def __init__(
        self,
        on_message: MessageSink,
        *,
        stream_text: bool = True,
        stream_reasoning: bool = False,
    ) -> None:
        super().__init__(on_message)
        self.stream_text = stream_text
        self.stream_reasoning = stream_reasoning
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self.done = False
        self.skipped_lines = 0

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning)

    @property
    def final_text(self) -> str:
        """Assistant text for history: content, or reasoning when empty."""
        return self.content or self.reasoning

    def _process_line(self, line: str) -> None:
        line = line.strip()
        if not line.startswith("data:"):
            # event:, id:, retry: and ": comment" lines carry nothing here
            return
        payload = line[5:].strip()
        if not payload:
            return
        if payload == DONE_SENTINEL:
            self.done = True
            return
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            logger.debug("Skipping malformed SSE frame: %.200s", payload)
            return
        if not isinstance(frame, dict):
            return

        choices = frame.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return
        delta = choices[0].get("delta") or {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            self._reasoning.append(reasoning)
            if self.stream_reasoning:
                self.emit(ReasoningMessage(text=reasoning))

        content = delta.get("content")
        if isinstance(content, str) and content:
            self._content.append(content)
            if self.stream_text:
                self.emit(TextMessage(text=content))

    def _flush(self) -> None:
        content = self.content
        reasoning = self.reasoning
        if not self.stream_reasoning and reasoning and (content or self.stream_text):
            self.emit(ReasoningMessage(text=reasoning))
        if not self.stream_text and self.final_text:
            self.emit(TextMessage(text=self.final_text))
