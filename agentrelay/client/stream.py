"""aiohttp client for the relay API and its SSE event stream."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable
from urllib.parse import urlencode

import aiohttp

from ..engine.errors import SessionNotFoundError, TransportError
from ..sync.events import SyncEvent, dict_to_event
from .cache import MACHINES_KEY, SESSIONS_KEY, CacheKey, QueryCache
from .reducer import SyncReducer

logger = logging.getLogger(__name__)

# Reconnects inside this window do not fire on_connect again.
CONNECT_DEBOUNCE_SECONDS = 3.0


class RelayApiClient:
    """Thin REST client over one aiohttp session."""

    def __init__(self, base_url: str, token: str = "", *, session: aiohttp.ClientSession | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._session = session
        self._owns_session = session is None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async with self._client().request(
            method, f"{self.base_url}{path}", headers=self._headers(), **kwargs,
        ) as resp:
            body = await resp.text()
            if resp.status == 404:
                raise SessionNotFoundError(path.split("/")[3] if path.count("/") >= 3 else path)
            if resp.status >= 400:
                raise TransportError(f"Relay API error: {resp.status} {body}", status=resp.status)
            return json.loads(body) if body else {}

    async def list_sessions(self) -> list[dict[str, Any]]:
        return (await self._request("GET", "/api/sessions"))["sessions"]

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return (await self._request("GET", f"/api/sessions/{session_id}"))["session"]

    async def get_messages(self, session_id: str, limit: int = 50, before_seq: int | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit}
        if before_seq is not None:
            params["beforeSeq"] = before_seq
        return await self._request("GET", f"/api/sessions/{session_id}/messages", params=params)

    async def list_machines(self) -> list[dict[str, Any]]:
        return (await self._request("GET", "/api/machines"))["machines"]

    async def create_session(self, agent: str, cwd: str, **extra: Any) -> dict[str, Any]:
        payload = {"agent": agent, "cwd": cwd, **extra}
        return (await self._request("POST", "/api/sessions", json=payload))["session"]

    async def send_message(self, session_id: str, text: str, local_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": text}
        if local_id:
            payload["localId"] = local_id
        return (await self._request("POST", f"/api/sessions/{session_id}/messages", json=payload))["message"]

    async def abort(self, session_id: str) -> None:
        await self._request("POST", f"/api/sessions/{session_id}/abort")

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class SyncEventStream:
    """Consumes /api/events into a SyncReducer, reconnecting on drop.

    After every (re)connect the subscribed scope is invalidated and, when
    an api client is given, stale cache entries are refetched.
    """

    def __init__(
        self,
        base_url: str,
        reducer: SyncReducer,
        *,
        token: str = "",
        all: bool = False,
        session_id: str | None = None,
        machine_id: str | None = None,
        client_id: str | None = None,
        device_type: str | None = None,
        api: RelayApiClient | None = None,
        on_event: Callable[[SyncEvent], None] | None = None,
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[str], None] | None = None,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.reducer = reducer
        self.token = token
        self.all = all
        self.session_id = session_id
        self.machine_id = machine_id
        self.client_id = client_id
        self.device_type = device_type
        self.api = api
        self.on_event = on_event
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._last_connect: float = 0.0
        self._stopped = False
        self.connect_count = 0

    @property
    def cache(self) -> QueryCache:
        return self.reducer.cache

    def events_url(self) -> str:
        params: dict[str, str] = {}
        if self.token:
            params["token"] = self.token
        if self.client_id:
            params["clientId"] = self.client_id
        if self.device_type:
            params["deviceType"] = self.device_type
        if self.all:
            params["all"] = "true"
        if self.session_id:
            params["sessionId"] = self.session_id
        if self.machine_id:
            params["machineId"] = self.machine_id
        return f"{self.base_url}/api/events?{urlencode(params)}"

    def stop(self) -> None:
        self._stopped = True

    def handle_line(self, line: str) -> SyncEvent | None:
        """Apply one SSE line. Comments and malformed frames are skipped."""
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):].strip()
        try:
            data = json.loads(payload)
            event = dict_to_event(data) if isinstance(data, dict) else None
        except (json.JSONDecodeError, ValueError) as exc:
            logger.debug("Skipping SSE frame: %s", exc)
            return None
        if event is None:
            return None
        self.reducer.apply(event)
        if self.on_event is not None:
            self.on_event(event)
        return event

    async def _handle_connected(self) -> None:
        self.connect_count += 1
        now = time.monotonic()
        debounced = self._last_connect and now - self._last_connect < CONNECT_DEBOUNCE_SECONDS
        if debounced:
            logger.debug("SSE reconnect debounced")
            return
        self._last_connect = now
        self.reducer.handle_connect(all=self.all, session_id=self.session_id, machine_id=self.machine_id)
        if self.on_connect is not None:
            self.on_connect()
        if self.api is not None:
            await self.refetch_stale(self.api)

    async def refetch_stale(self, api: RelayApiClient) -> list[CacheKey]:
        """Refill every stale entry the API can serve. Returns refreshed keys."""
        refreshed: list[CacheKey] = []
        for key in self.cache.stale_keys():
            try:
                if key == SESSIONS_KEY:
                    self.cache.set(key, await api.list_sessions())
                elif key == MACHINES_KEY:
                    self.cache.set(key, await api.list_machines())
                elif key[0] == "session":
                    self.cache.set(key, await api.get_session(key[1]))
                elif key[0] == "messages":
                    page = await api.get_messages(key[1])
                    self.cache.set(key, page["messages"])
                else:
                    continue
            except SessionNotFoundError:
                self.cache.remove(key)
                continue
            refreshed.append(key)
        return refreshed

    async def run_once(self, session: aiohttp.ClientSession) -> None:
        """One connection: stream until the server closes it."""
        async with session.get(
            self.events_url(),
            headers={"Accept": "text/event-stream"},
            timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
        ) as resp:
            if resp.status != 200:
                raise TransportError(f"SSE connect failed: {resp.status}", status=resp.status)
            await self._handle_connected()
            buffer = ""
            async for chunk in resp.content.iter_any():
                buffer += chunk.decode("utf-8", errors="replace")
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    self.handle_line(line.rstrip("\r"))
                if self._stopped:
                    return

    async def run(self) -> None:
        """Stream forever with capped exponential backoff between attempts."""
        backoff = self.initial_backoff
        async with aiohttp.ClientSession() as session:
            while not self._stopped:
                reason = "closed"
                try:
                    await self.run_once(session)
                    backoff = self.initial_backoff
                except (aiohttp.ClientError, TransportError, asyncio.TimeoutError) as exc:
                    reason = str(exc) or type(exc).__name__
                    logger.warning("SSE connection error: %s (retry in %.1fs)", reason, backoff)
                if self.on_disconnect is not None:
                    self.on_disconnect(reason)
                if self._stopped:
                    break
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
