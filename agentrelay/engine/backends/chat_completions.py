"""Shared base for OpenAI-compatible chat-completion backends.

The whole session history is posted on every turn with ``stream: true``
and the SSE body is fed to ``ChatDeltaParser``. Cancellation cancels the
reading task, which closes the response.
"""
from __future__ import annotations

import codecs
import logging
from typing import Any

import aiohttp

from ..credentials import CredentialStore
from ..errors import ConfigurationError, TransportError
from ..models import AgentMessage, Session
from ..parsers.chat_delta import ChatDeltaParser
from ..turn import TurnHandle
from .base import Backend, BackendCapabilities, TurnEmitter

logger = logging.getLogger(__name__)


class ChatCompletionsBackend(Backend):
    """Backend for any OpenAI-compatible ``/chat/completions`` endpoint.

    Subclasses set the endpoint, credential vendor and payload defaults,
    and choose text/reasoning granularity through ``capabilities``.
    """

    api_url: str = ""
    vendor: str = ""
    label: str = "Chat"
    env_var: str = ""
    key_hint: str = ""
    payload_defaults: dict[str, Any] = {}
    connect_timeout: float = 30.0

    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        api_url: str | None = None,
        credentials: CredentialStore | None = None,
    ) -> None:
        super().__init__()
        if model:
            self.default_model = model
        if api_url:
            self.api_url = api_url
        self._api_key = api_key
        self._credentials = credentials
        self._http: aiohttp.ClientSession | None = None

    @property
    def api_key(self) -> str | None:
        if self._api_key:
            return self._api_key
        if self._credentials is not None:
            return self._credentials.get_token(self.vendor)
        return None

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def initialize(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                f"{self.label} API key ({self.env_var})",
                self.key_hint,
            )
        logger.info("%s backend ready model=%s url=%s", self.name, self.default_model, self.api_url)

    def request_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, session: Session) -> dict[str, Any]:
        return {
            "model": session.model or self.default_model,
            "messages": [m.to_dict() for m in session.messages],
            **self.payload_defaults,
            "stream": True,
        }

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout),
            )
        return self._http

    async def _run_turn(
        self,
        session: Session,
        user_text: str,
        handle: TurnHandle,
        emit: TurnEmitter,
    ) -> str | None:
        if not self.api_key:
            raise ConfigurationError(f"{self.label} API key ({self.env_var})", self.key_hint)
        return await handle.guard(self._stream_completion(session, emit))

    async def _stream_completion(self, session: Session, emit: TurnEmitter) -> str:
        pending: list[AgentMessage] = []
        caps: BackendCapabilities = self.capabilities
        parser = ChatDeltaParser(
            pending.append,
            stream_text=caps.streams_text,
            stream_reasoning=caps.streams_reasoning,
        )
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        payload = self.build_payload(session)
        logger.debug(
            "%s POST %s model=%s messages=%d",
            self.name, self.api_url, payload["model"], len(payload["messages"]),
        )
        try:
            async with self._client().post(
                self.api_url, json=payload, headers=self.request_headers(),
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise TransportError(
                        f"{self.label} API error: {resp.status} {body.strip()[:500]}",
                        status=resp.status,
                    )
                async for chunk in resp.content.iter_any():
                    parser.handle_chunk(decoder.decode(chunk))
                    await emit.drain(pending)
                parser.handle_chunk(decoder.decode(b"", final=True))
        except aiohttp.ClientError as exc:
            raise TransportError(f"{self.label} request failed: {exc}") from exc

        parser.finalize()
        await emit.drain(pending)
        if parser.skipped_lines:
            logger.warning(
                "%s skipped %d malformed stream frames", self.name, parser.skipped_lines,
            )
        return parser.final_text

    async def _release(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
