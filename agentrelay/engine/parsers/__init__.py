"""Stream parsers: raw vendor output to normalized AgentMessages."""
from .base import StreamParser
from .chat_delta import ChatDeltaParser
from .ndjson import NdjsonStreamParser
from .terminal import ParserState, TerminalTextParser

__all__ = [
    "StreamParser",
    "ChatDeltaParser",
    "NdjsonStreamParser",
    "ParserState",
    "TerminalTextParser",
]
