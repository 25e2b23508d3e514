"""OpenRouter backend.

Streams assistant text to the caller per delta. Reasoning is collected
and delivered once at turn end.
"""
from __future__ import annotations

import logging

from ..models import SessionConfig
from .base import BackendCapabilities
from .chat_completions import ChatCompletionsBackend

logger = logging.getLogger(__name__)

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

_SYSTEM_PROMPT = """\
You are an AI pair programming assistant. You help users with coding tasks.

Current working directory: {cwd}

You help the user with their coding tasks by:
1. Understanding their requirements
2. Suggesting code changes
3. Explaining technical concepts
4. Debugging issues
5. Writing new code

When suggesting code changes, be specific about file paths and show the exact changes needed.
Always explain your reasoning and approach."""


class OpenRouterBackend(ChatCompletionsBackend):
    api_url = OPENROUTER_API_URL
    vendor = "openrouter"
    label = "OpenRouter"
    env_var = "OPENROUTER_API_KEY"
    key_hint = "Set OPENROUTER_API_KEY or store an openrouter credential."
    default_model = "anthropic/claude-sonnet-4"
    payload_defaults = {"max_tokens": 8192, "temperature": 0.7}

    def __init__(self, *, referer: str = "https://github.com/agentrelay", title: str = "agentrelay", **kwargs) -> None:
        super().__init__(**kwargs)
        self._referer = referer
        self._title = title

    @property
    def name(self) -> str:
        return "openrouter"

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(streams_text=True, streams_reasoning=False)

    def build_system_prompt(self, config: SessionConfig) -> str:
        prompt = _SYSTEM_PROMPT.format(cwd=config.cwd)
        if config.system_prompt:
            prompt = f"{config.system_prompt}\n\n{prompt}"
        return prompt

    def request_headers(self) -> dict[str, str]:
        headers = super().request_headers()
        headers["HTTP-Referer"] = self._referer
        headers["X-Title"] = self._title
        return headers
