"""HTTP + SSE control server.

Thin adapter over SessionController: handles routing, SSE fan-out of bus
events, and answers to tunnel questions and restart offers. Lifecycle
state lives in the controller.

Routes:
    GET  /health                    liveness
    GET  /status                    session snapshot
    GET  /events                    SSE stream of supervisor events
    POST /start                     start (body: {"tunnel": "..."})
    POST /stop                      stop
    POST /restart                   restart
    POST /reload                    fire the reload trigger
    PUT  /root                      change the working root (body: {"root": "..."})
    POST /answer                    answer a tunnel question
    POST /offers/{id}/accept        accept a restart offer
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from collections.abc import Coroutine
from typing import Any

from aiohttp import web

from metrowatch.adapters.event_bus import EventBus
from metrowatch.adapters.events import event_to_dict
from metrowatch.adapters.reporting import BusPrompter
from metrowatch.engine.config import parse_tunnel_behavior
from metrowatch.engine.controller import SessionController
from metrowatch.engine.errors import AlreadyActiveError, StartAbortedError, SupervisorError
from metrowatch.engine.models import TunnelBehavior
from metrowatch.engine.root_source import RootSource
from metrowatch.engine.triggers import GLOBAL_RELOAD_HOTKEY, TriggerRegistry

logger = logging.getLogger(__name__)


class ControlServer:
    """HTTP control surface for one SessionController."""

    def __init__(
        self,
        controller: SessionController,
        root_source: RootSource,
        bus: EventBus,
        prompter: BusPrompter,
        triggers: TriggerRegistry,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        trigger_id: str = GLOBAL_RELOAD_HOTKEY,
    ) -> None:
        self._controller = controller
        self._root_source = root_source
        self._bus = bus
        self._prompter = prompter
        self._triggers = triggers
        self._host = host
        self._port = port
        self._trigger_id = trigger_id
        self._started_at = time.time()
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._actions: set[asyncio.Task] = set()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-metrowatch-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
            )
            return response
        except Exception:
            logger.exception("HTTP %s %s req=%s failed", request.method, request.path_qs, req_id)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/status", self._handle_status)
        r.add_get("/events", self._handle_sse)
        r.add_post("/start", self._handle_start)
        r.add_post("/stop", self._handle_stop)
        r.add_post("/restart", self._handle_restart)
        r.add_post("/reload", self._handle_reload)
        r.add_put("/root", self._handle_set_root)
        r.add_post("/answer", self._handle_answer)
        r.add_post("/offers/{id}/accept", self._handle_accept_offer)

    # ── Lifecycle ──

    async def start(self, autostart: TunnelBehavior | None = None) -> None:
        """Serve until cancelled, then stop the session."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site)
        if actual_port is not None:
            self._port = actual_port
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("metrowatch server listening on %s:%s", self._host, self._port)

        pump = asyncio.create_task(self._pump_events())
        if autostart is not None:
            self._spawn(self._controller.start(autostart), "start")
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._controller.dispose()
            for task in list(self._actions):
                task.cancel()
            await asyncio.gather(*self._actions, return_exceptions=True)
            self._bus.close()
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        return None

    # ── SSE fan-out ──

    async def _pump_events(self) -> None:
        async for event in self._bus.consume():
            data = event_to_dict(event)
            self._broadcast_sse(data.pop("event"), data)

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    # ── Background actions ──

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        task = asyncio.create_task(self._run_action(coro, label))
        self._actions.add(task)
        task.add_done_callback(self._actions.discard)

    async def _run_action(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
        except StartAbortedError:
            logger.info("%s aborted", label)
        except SupervisorError as exc:
            # Reported to SSE clients through the bus.
            logger.debug("%s failed: %s", label, exc)

    def _snapshot(self) -> dict[str, Any]:
        session = self._controller.session
        snapshot: dict[str, Any] = {
            "status": self._controller.status.value,
            "root": self._root_source.value,
            "session": None,
            "pending_questions": self._prompter.pending_questions(),
            "pending_offers": self._prompter.pending_offers(),
        }
        if session is not None:
            snapshot["session"] = {
                "project_root": session.project_root,
                "status": session.status.value,
                "started_at": session.started_at,
                "tunnel_open": session.tunnel is not None,
                "reload_registered": session.trigger_registration is not None,
            }
        return snapshot

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "invalid JSON body"}),
                content_type="application/json",
            )
        return body if isinstance(body, dict) else {}

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._snapshot())

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected active_clients=%d", len(self._sse_queues))
        try:
            await response.write(
                f"event: connected\ndata: {json.dumps(self._snapshot())}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected active_clients=%d", len(self._sse_queues))
        return response

    async def _handle_start(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        behavior = None
        if body.get("tunnel") is not None:
            try:
                behavior = parse_tunnel_behavior(str(body["tunnel"]))
            except ValueError as exc:
                return web.json_response({"error": str(exc)}, status=400)
        session = self._controller.session
        if session is not None:
            error = AlreadyActiveError(session.status.value)
            return web.json_response({"error": str(error)}, status=409)
        self._spawn(self._controller.start(behavior), "start")
        return web.json_response({"status": "starting"}, status=202)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        await self._controller.stop()
        return web.json_response({"status": self._controller.status.value})

    async def _handle_restart(self, request: web.Request) -> web.Response:
        self._spawn(self._controller.restart(), "restart")
        return web.json_response({"status": "restarting"}, status=202)

    async def _handle_reload(self, request: web.Request) -> web.Response:
        if not self._triggers.fire(self._trigger_id):
            return web.json_response({"error": "bundler is not running"}, status=409)
        return web.json_response({"status": "reloading"}, status=202)

    async def _handle_set_root(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        root = body.get("root")
        if root is not None and not isinstance(root, str):
            return web.json_response({"error": "root must be a string or null"}, status=400)
        self._root_source.set(root)
        return web.json_response({"root": self._root_source.value})

    async def _handle_answer(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        accepted = body.get("accepted")
        if not isinstance(accepted, bool):
            return web.json_response({"error": "accepted must be a boolean"}, status=400)
        if not self._prompter.answer(body.get("request_id"), accepted):
            return web.json_response({"error": "no such pending question"}, status=404)
        return web.json_response({"ok": True})

    async def _handle_accept_offer(self, request: web.Request) -> web.Response:
        offer_id = request.match_info["id"]
        if offer_id not in self._prompter.pending_offers():
            return web.json_response({"error": "no such restart offer"}, status=404)
        self._spawn(self._prompter.accept_offer(offer_id), "start")
        return web.json_response({"status": "starting"}, status=202)
