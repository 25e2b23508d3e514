"""HTTP + SSE server for the agent relay.

Exposes sessions, messages and machines over a REST API and pushes every
SyncEngine change to browsers over Server-Sent Events. Turns run in the
background; clients follow them through ``message-received`` events.

Usage:
    agentrelay serve [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any

from aiohttp import web

from ..engine.backends import AgentRegistry
from ..engine.config import RelayConfig
from ..engine.errors import (
    ConfigurationError,
    RelayError,
    SessionBusyError,
    SessionNotFoundError,
    TransportError,
    UnknownAgentError,
)
from ..engine.models import SessionConfig
from ..sync.engine import SyncEngine
from ..sync.events import CONNECTION_CHANGED, SyncEvent, event_to_dict
from ..sync.fanout import SSEManager, Subscription
from ..sync.hub import SessionHub
from ..sync.store import SessionStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50

_ERROR_STATUS: tuple[tuple[type[RelayError], int], ...] = (
    (SessionNotFoundError, 404),
    (UnknownAgentError, 404),
    (SessionBusyError, 409),
    (ConfigurationError, 400),
    (TransportError, 502),
)


def _truthy(value: str | None) -> bool:
    return (value or "").lower() in {"1", "true", "yes", "on"}


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    body = await request.json()
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return body


class RelayServer:
    """HTTP routing and SSE fan-out over a SessionHub.

    All state lives in the SyncEngine; this class only translates
    requests into hub and engine calls.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: AgentRegistry,
        store: SessionStore | None = None,
    ) -> None:
        self._config = config
        self._store = store or SessionStore(config.db_path)
        self.engine = SyncEngine(
            self._store,
            session_timeout=config.session_timeout_seconds,
            machine_timeout=config.machine_timeout_seconds,
            expire_interval=config.expire_interval_seconds,
        )
        self.sse = SSEManager()
        self.hub = SessionHub(registry, self.engine, namespace=config.namespace)
        self._unsubscribe = self.engine.subscribe(self.sse.broadcast)
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._auth_middleware, self._error_middleware]
        )
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "RelayServer init host=%s port=%s db=%s agents=%s pid=%s",
            config.host, config.port, config.db_path,
            ",".join(registry.list_names()) or "<none>", os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path, req_id, exc.status, elapsed_ms,
            )
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        token = self._config.access_token
        if not token or request.path == "/health":
            return await handler(request)
        supplied = request.query.get("token")
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            supplied = header[len("Bearer "):]
        if supplied != token:
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        except RelayError as exc:
            for error_type, status in _ERROR_STATUS:
                if isinstance(exc, error_type):
                    return web.json_response({"error": str(exc)}, status=status)
            return web.json_response({"error": str(exc)}, status=500)
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/events", self._handle_sse)
        r.add_get("/api/agents", self._handle_list_agents)
        # Session CRUD
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions", self._handle_create_session)
        r.add_get("/api/sessions/{id}", self._handle_get_session)
        r.add_delete("/api/sessions/{id}", self._handle_remove_session)
        # Messages and turns
        r.add_get("/api/sessions/{id}/messages", self._handle_get_messages)
        r.add_post("/api/sessions/{id}/messages", self._handle_send_message)
        r.add_post("/api/sessions/{id}/abort", self._handle_abort)
        r.add_post("/api/sessions/{id}/permission-mode", self._handle_permission_mode)
        r.add_post("/api/sessions/{id}/permissions/{request_id}", self._handle_permission_response)
        r.add_post("/api/sessions/{id}/typing", self._handle_typing)
        # Liveness
        r.add_post("/api/sessions/{id}/alive", self._handle_session_alive)
        r.add_post("/api/sessions/{id}/end", self._handle_session_end)
        r.add_get("/api/machines", self._handle_list_machines)
        r.add_post("/api/machines/{id}/alive", self._handle_machine_alive)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self.engine.reload_all()
        self.engine.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        logger.info("Server shutting down")
        self.sse.close_all()
        await self.hub.shutdown()
        await self.engine.stop()
        self._unsubscribe()

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info("Relay server listening on %s:%d", self._config.host, self._config.port)
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            await runner.cleanup()

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "sessions": len(self.engine.get_sessions()),
            "sse_clients": self.sse.connection_count,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        query = request.query
        subscription = Subscription(
            namespace=self._config.namespace,
            all=_truthy(query.get("all")),
            session_id=query.get("sessionId") or None,
            machine_id=query.get("machineId") or None,
            client_id=query.get("clientId") or None,
            device_type=query.get("deviceType") or None,
            queue_size=self._config.sse_queue_size,
        )
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        self.sse.subscribe(subscription)
        logger.info(
            "SSE client connected req=%s sub=%s active_clients=%d",
            request.get("req_id", "unknown"), subscription.id, self.sse.connection_count,
        )
        hello = SyncEvent(
            CONNECTION_CHANGED,
            data={"status": "connected", "subscriptionId": subscription.id},
        )
        heartbeat = self._config.sse_heartbeat_seconds
        try:
            await response.write(f"data: {json.dumps(event_to_dict(hello))}\n\n".encode())
            while True:
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=heartbeat)
                    if event is None:
                        break
                    await response.write(f"data: {json.dumps(event_to_dict(event))}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self.sse.unsubscribe(subscription.id)
            logger.info(
                "SSE client disconnected req=%s sub=%s active_clients=%d",
                request.get("req_id", "unknown"), subscription.id, self.sse.connection_count,
            )
        return response

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        report = self.hub.registry.availability_report()
        return web.json_response({
            "agents": [{"name": name, "available": ok} for name, ok in report.items()],
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = sorted(
            self.engine.get_sessions_by_namespace(self._config.namespace),
            key=lambda s: s.updated_at,
            reverse=True,
        )
        return web.json_response({"sessions": [s.to_summary() for s in sessions]})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        agent = str(body.get("agent", "")).strip()
        if not agent:
            return web.json_response({"error": "agent is required"}, status=400)
        config = SessionConfig.from_dict(body)
        record = await self.hub.create_session(
            agent,
            config,
            machine_id=body.get("machineId"),
            name=body.get("name"),
        )
        return web.json_response({"session": record.to_dict()}, status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        record = self.engine.get_session(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return web.json_response({"session": record.to_dict()})

    async def _handle_remove_session(self, request: web.Request) -> web.Response:
        await self.hub.remove_session(request.match_info["id"])
        return web.json_response({"ok": True})

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if self.engine.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)
        try:
            limit = int(request.query.get("limit", DEFAULT_PAGE_SIZE))
            before = request.query.get("beforeSeq")
            before_seq = int(before) if before else None
        except ValueError:
            return web.json_response({"error": "limit and beforeSeq must be integers"}, status=400)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        return web.json_response(self.engine.get_messages_page(session_id, limit, before_seq))

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await _read_json(request)
        text = str(body.get("text", ""))
        if not text.strip():
            return web.json_response({"error": "text is required"}, status=400)
        message = await self.hub.send_message(session_id, text, body.get("localId"))
        return web.json_response({"message": message.to_dict()}, status=202)

    async def _handle_abort(self, request: web.Request) -> web.Response:
        await self.hub.abort(request.match_info["id"])
        return web.json_response({"ok": True})

    async def _handle_permission_mode(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        mode = body.get("mode")
        if not mode:
            return web.json_response({"error": "mode is required"}, status=400)
        record = self.hub.set_permission_mode(request.match_info["id"], mode)
        return web.json_response({"session": record.to_dict()})

    async def _handle_permission_response(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        await self.hub.respond_to_permission(
            request.match_info["id"],
            request.match_info["request_id"],
            bool(body.get("approved")),
            body.get("message"),
        )
        return web.json_response({"ok": True})

    async def _handle_typing(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if self.engine.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)
        body = await _read_json(request)
        self.engine.set_typing(session_id, body.get("clientId"), bool(body.get("typing", True)))
        return web.json_response({"ok": True})

    async def _handle_session_alive(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if self.engine.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)
        body = await _read_json(request)
        broadcast = self.engine.handle_session_alive(
            session_id,
            body.get("time"),
            thinking=bool(body.get("thinking")),
            permission_mode=body.get("permissionMode"),
            model_mode=body.get("modelMode"),
            model_reasoning_effort=body.get("modelReasoningEffort"),
        )
        return web.json_response({"ok": True, "broadcast": broadcast})

    async def _handle_session_end(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if self.engine.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)
        body = await _read_json(request)
        self.engine.handle_session_end(session_id, body.get("time"))
        return web.json_response({"ok": True})

    async def _handle_list_machines(self, request: web.Request) -> web.Response:
        machines = [
            m.to_dict() for m in self.engine.get_machines()
            if m.namespace == self._config.namespace
        ]
        return web.json_response({"machines": machines})

    async def _handle_machine_alive(self, request: web.Request) -> web.Response:
        machine_id = request.match_info["id"]
        body = await _read_json(request)
        self.engine.get_or_create_machine(
            machine_id, namespace=self._config.namespace, metadata=body.get("metadata"),
        )
        broadcast = self.engine.handle_machine_alive(machine_id, body.get("time"))
        return web.json_response({"ok": True, "broadcast": broadcast})
