from __future__ import annotations

import asyncio
import json
import tempfile

from aiohttp.test_utils import AioHTTPTestCase

from agentrelay.engine.backends import AgentRegistry, Backend, BackendCapabilities
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.models import TextMessage
from agentrelay.server.server import RelayServer
from agentrelay.sync.store import SessionStore

TOKEN = "test-token"


class GatedEchoBackend(Backend):
    def __init__(self) -> None:
        super().__init__()
        self.gate: asyncio.Event | None = None

    @property
    def name(self) -> str:
        return "echo"

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(streams_text=True)

    async def initialize(self) -> None:
        return None

    async def _run_turn(self, session, user_text, handle, emit):
        if self.gate is not None:
            await handle.guard(self.gate.wait())
        await emit(TextMessage(text=f"echo: {user_text}"))
        return f"echo: {user_text}"


class TestRelayServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.backend = GatedEchoBackend()
        registry = AgentRegistry()
        registry.register("echo", lambda: self.backend)
        config = RelayConfig(data_dir=self.tmpdir, access_token=TOKEN, sse_heartbeat_seconds=1.0)
        self.relay = RelayServer(config, registry, SessionStore(f"{self.tmpdir}/relay.db"))
        self.auth = {"Authorization": f"Bearer {TOKEN}"}
        return self.relay.app

    async def _create_session(self, **body) -> dict:
        payload = {"agent": "echo", "cwd": "/work", **body}
        resp = await self.client.post("/api/sessions", json=payload, headers=self.auth)
        assert resp.status == 201
        return (await resp.json())["session"]

    async def test_health_is_open_and_api_requires_token(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"

        resp = await self.client.get("/api/sessions")
        assert resp.status == 401

        resp = await self.client.get("/api/sessions", headers={"Authorization": "Bearer wrong"})
        assert resp.status == 401

        resp = await self.client.get(f"/api/sessions?token={TOKEN}")
        assert resp.status == 200

    async def test_agents_are_listed(self):
        resp = await self.client.get("/api/agents", headers=self.auth)
        assert await resp.json() == {"agents": [{"name": "echo", "available": True}]}

    async def test_session_crud(self):
        session = await self._create_session(name="demo", permissionMode="plan")
        assert session["metadata"]["agent"] == "echo"
        assert session["metadata"]["name"] == "demo"
        assert session["permissionMode"] == "plan"

        resp = await self.client.get("/api/sessions", headers=self.auth)
        summaries = (await resp.json())["sessions"]
        assert [s["id"] for s in summaries] == [session["id"]]
        assert summaries[0]["path"] == "/work"

        resp = await self.client.get(f"/api/sessions/{session['id']}", headers=self.auth)
        assert (await resp.json())["session"]["id"] == session["id"]

        resp = await self.client.delete(f"/api/sessions/{session['id']}", headers=self.auth)
        assert resp.status == 200
        resp = await self.client.get(f"/api/sessions/{session['id']}", headers=self.auth)
        assert resp.status == 404

    async def test_create_session_validation(self):
        resp = await self.client.post("/api/sessions", json={"cwd": "/work"}, headers=self.auth)
        assert resp.status == 400
        assert "agent" in (await resp.json())["error"]

        resp = await self.client.post("/api/sessions", json={"agent": "ghost"}, headers=self.auth)
        assert resp.status == 404
        assert "ghost" in (await resp.json())["error"]

        resp = await self.client.post(
            "/api/sessions", data="{not json", headers={**self.auth, "Content-Type": "application/json"},
        )
        assert resp.status == 400

    async def test_send_message_runs_turn_and_pages_history(self):
        session = await self._create_session()
        sid = session["id"]

        resp = await self.client.post(
            f"/api/sessions/{sid}/messages", json={"text": "hi", "localId": "L1"}, headers=self.auth,
        )
        assert resp.status == 202
        message = (await resp.json())["message"]
        assert message["localId"] == "L1"
        assert message["content"]["role"] == "user"
        assert message["content"]["content"] == {"type": "text", "text": "hi"}
        assert message["content"]["turnId"]

        assert await self.relay.hub.wait_idle(sid, timeout=2.0)

        resp = await self.client.get(f"/api/sessions/{sid}/messages?limit=2", headers=self.auth)
        page = await resp.json()
        assert [m["seq"] for m in page["messages"]] == [2, 3]
        assert [m["content"]["content"]["type"] for m in page["messages"]] == ["text", "turn_complete"]
        assert page["messages"][0]["content"]["content"]["text"] == "echo: hi"
        assert page["page"]["hasMore"] is True
        assert page["page"]["nextBeforeSeq"] == 2

        resp = await self.client.get(
            f"/api/sessions/{sid}/messages?beforeSeq=2", headers=self.auth,
        )
        older = await resp.json()
        assert [m["seq"] for m in older["messages"]] == [1]
        assert older["page"]["hasMore"] is False

        resp = await self.client.get(f"/api/sessions/{sid}/messages?limit=abc", headers=self.auth)
        assert resp.status == 400

    async def test_empty_message_is_rejected(self):
        session = await self._create_session()
        resp = await self.client.post(
            f"/api/sessions/{session['id']}/messages", json={"text": "   "}, headers=self.auth,
        )
        assert resp.status == 400

    async def test_busy_session_returns_409_until_aborted(self):
        session = await self._create_session()
        sid = session["id"]
        self.backend.gate = asyncio.Event()

        resp = await self.client.post(f"/api/sessions/{sid}/messages", json={"text": "one"}, headers=self.auth)
        assert resp.status == 202
        resp = await self.client.post(f"/api/sessions/{sid}/messages", json={"text": "two"}, headers=self.auth)
        assert resp.status == 409

        resp = await self.client.post(f"/api/sessions/{sid}/abort", headers=self.auth)
        assert resp.status == 200
        assert await self.relay.hub.wait_idle(sid, timeout=2.0)

        self.backend.gate = None
        resp = await self.client.post(f"/api/sessions/{sid}/messages", json={"text": "three"}, headers=self.auth)
        assert resp.status == 202

    async def test_unknown_session_returns_404(self):
        for method, path in (
            ("GET", "/api/sessions/nope"),
            ("GET", "/api/sessions/nope/messages"),
            ("POST", "/api/sessions/nope/messages"),
            ("POST", "/api/sessions/nope/abort"),
            ("DELETE", "/api/sessions/nope"),
            ("POST", "/api/sessions/nope/alive"),
        ):
            resp = await self.client.request(method, path, json={"text": "x"}, headers=self.auth)
            assert resp.status == 404, (method, path)

    async def test_permission_mode_validation(self):
        session = await self._create_session()
        sid = session["id"]

        resp = await self.client.post(
            f"/api/sessions/{sid}/permission-mode", json={"mode": "acceptEdits"}, headers=self.auth,
        )
        assert (await resp.json())["session"]["permissionMode"] == "acceptEdits"

        resp = await self.client.post(
            f"/api/sessions/{sid}/permission-mode", json={"mode": "anything"}, headers=self.auth,
        )
        assert resp.status == 400

    async def test_session_and_machine_liveness(self):
        session = await self._create_session()
        sid = session["id"]

        resp = await self.client.post(f"/api/sessions/{sid}/alive", json={"thinking": True}, headers=self.auth)
        assert await resp.json() == {"ok": True, "broadcast": True}
        resp = await self.client.post(f"/api/sessions/{sid}/alive", json={"thinking": True}, headers=self.auth)
        assert await resp.json() == {"ok": True, "broadcast": False}
        resp = await self.client.post(f"/api/sessions/{sid}/end", json={}, headers=self.auth)
        assert resp.status == 200
        assert self.relay.engine.get_session(sid).active is False

        resp = await self.client.post(
            "/api/machines/m1/alive", json={"metadata": {"host": "box"}}, headers=self.auth,
        )
        assert (await resp.json())["broadcast"] is True
        resp = await self.client.get("/api/machines", headers=self.auth)
        machines = (await resp.json())["machines"]
        assert [(m["id"], m["active"], m["metadata"]) for m in machines] == [("m1", True, {"host": "box"})]

    async def test_sse_stream_starts_with_connected_frame(self):
        resp = await self.client.get(f"/api/events?all=true&clientId=web-1&token={TOKEN}")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")

        first = await asyncio.wait_for(resp.content.readline(), timeout=2.0)
        hello = json.loads(first.decode()[len("data: "):])
        assert hello["type"] == "connection-changed"
        assert hello["data"]["status"] == "connected"

        session = await self._create_session()
        seen = []
        while "session-added" not in seen:
            line = await asyncio.wait_for(resp.content.readline(), timeout=2.0)
            if line.startswith(b"data: "):
                event = json.loads(line.decode()[len("data: "):])
                seen.append(event["type"])
                if event["type"] == "session-added":
                    assert event["sessionId"] == session["id"]
        assert "online-users-changed" in seen
        resp.close()
