"""Tests for the SSE client: frame handling, refetch after connect, and a live stream."""
from __future__ import annotations

import asyncio
import json
import tempfile
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from aiohttp.test_utils import TestServer

from agentrelay.client.cache import (
    MACHINES_KEY,
    SESSIONS_KEY,
    QueryCache,
    messages_key,
    session_key,
    typing_key,
)
from agentrelay.client.reducer import SyncReducer
from agentrelay.client.stream import RelayApiClient, SyncEventStream
from agentrelay.engine.backends import AgentRegistry
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import SessionNotFoundError
from agentrelay.server.server import RelayServer
from agentrelay.sync.store import SessionStore


def _stream(**kwargs) -> SyncEventStream:
    return SyncEventStream("http://relay.local/", SyncReducer(QueryCache()), **kwargs)


def test_events_url_carries_scope():
    stream = _stream(token="t", all=True, client_id="web-1", device_type="desktop")
    assert stream.events_url() == (
        "http://relay.local/api/events?token=t&clientId=web-1&deviceType=desktop&all=true"
    )
    assert _stream(session_id="s1").events_url() == "http://relay.local/api/events?sessionId=s1"


def test_handle_line_applies_data_frames_only():
    seen = []
    stream = _stream(on_event=seen.append)
    frame = {"type": "message-received", "sessionId": "s1", "data": {"id": "m1", "seq": 1}}

    assert stream.handle_line(": keepalive") is None
    assert stream.handle_line("data: {broken") is None
    assert stream.handle_line('data: {"type": "no-such-event"}') is None
    assert stream.handle_line("data: [1, 2]") is None

    event = stream.handle_line(f"data: {json.dumps(frame)}")
    assert event.session_id == "s1"
    assert seen == [event]
    assert stream.cache.get(messages_key("s1")) == [{"id": "m1", "seq": 1}]


@pytest.mark.asyncio
async def test_refetch_stale_fills_cache_and_drops_missing_sessions():
    stream = _stream()
    cache = stream.cache
    for key in (SESSIONS_KEY, MACHINES_KEY, session_key("s1"), messages_key("s1"), session_key("gone"), typing_key("s1")):
        cache.invalidate(key)

    api = MagicMock()
    api.list_sessions = AsyncMock(return_value=[{"id": "s1"}])
    api.list_machines = AsyncMock(return_value=[])

    async def get_session(session_id):
        if session_id == "gone":
            raise SessionNotFoundError(session_id)
        return {"id": session_id}

    api.get_session = AsyncMock(side_effect=get_session)
    api.get_messages = AsyncMock(return_value={"messages": [{"id": "m1", "seq": 1}], "page": {}})

    refreshed = await stream.refetch_stale(api)

    assert set(refreshed) == {SESSIONS_KEY, MACHINES_KEY, session_key("s1"), messages_key("s1")}
    assert cache.get(session_key("s1")) == {"id": "s1"}
    assert cache.get(messages_key("s1")) == [{"id": "m1", "seq": 1}]
    assert session_key("gone") not in cache
    assert cache.stale_keys() == [typing_key("s1")]


@pytest.mark.asyncio
async def test_reconnect_inside_debounce_window_does_not_refire():
    connects = []
    stream = _stream(all=True, on_connect=lambda: connects.append(1))

    await stream._handle_connected()
    await stream._handle_connected()

    assert stream.connect_count == 2
    assert connects == [1]
    assert set(stream.cache.stale_keys()) == {SESSIONS_KEY, MACHINES_KEY}


@pytest.mark.asyncio
async def test_live_stream_against_relay_server():
    tmpdir = tempfile.mkdtemp()
    config = RelayConfig(data_dir=tmpdir, access_token="tok")
    relay = RelayServer(config, AgentRegistry(), SessionStore(f"{tmpdir}/relay.db"))
    existing = relay.engine.create_session(metadata={"agent": "echo", "name": "old"})

    async with TestServer(relay.app) as server:
        base_url = str(server.make_url(""))
        api = RelayApiClient(base_url, "tok")
        stream = SyncEventStream(base_url, SyncReducer(QueryCache()), token="tok", all=True, api=api)

        def stop_on_message(event):
            if event.type == "message-received":
                stream.stop()

        stream.on_event = stop_on_message
        try:
            async with aiohttp.ClientSession() as http:
                task = asyncio.ensure_future(stream.run_once(http))
                for _ in range(200):
                    if stream.cache.get(SESSIONS_KEY) is not None:
                        break
                    await asyncio.sleep(0.01)
                assert [s["id"] for s in stream.cache.get(SESSIONS_KEY)] == [existing.id]

                relay.engine.add_message(existing.id, {"role": "user", "content": {"type": "text", "text": "hey"}})
                await asyncio.wait_for(task, timeout=5.0)

            messages = stream.cache.get(messages_key(existing.id))
            assert [m["content"]["content"]["text"] for m in messages] == ["hey"]

            with pytest.raises(SessionNotFoundError):
                await api.get_session("missing")
        finally:
            await api.close()
