"""NVIDIA NIM backend (also serves GLM).

NIM's reasoning models interleave ``reasoning_content`` and ``content``
deltas, so everything is buffered and delivered at turn end: reasoning
first (only when there is also an answer), then the answer as one text.
"""
from __future__ import annotations

from .base import BackendCapabilities
from .chat_completions import ChatCompletionsBackend

NIM_API_URL = "https://integrate.api.nvidia.com/v1/chat/completions"
GLM_MODEL = "z-ai/glm4.7"
MINIMAX_MODEL = "minimaxai/minimax-m2.1"


class NimBackend(ChatCompletionsBackend):
    api_url = NIM_API_URL
    vendor = "nim"
    label = "NIM"
    env_var = "NIM_API_KEY"
    key_hint = "Set NIM_API_KEY or store a nim credential."
    default_model = GLM_MODEL
    payload_defaults = {"max_tokens": 4096, "temperature": 0.7, "top_p": 0.95}

    def __init__(self, *, agent_name: str = "nim", **kwargs) -> None:
        super().__init__(**kwargs)
        self._agent_name = agent_name

    @property
    def name(self) -> str:
        return self._agent_name

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(streams_text=False, streams_reasoning=False)

    def request_headers(self) -> dict[str, str]:
        headers = super().request_headers()
        headers["Accept"] = "text/event-stream"
        return headers
