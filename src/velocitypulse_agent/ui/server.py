"""
Local status UI server.

Serves a JSON status snapshot and a websocket that pushes state changes
(connection, segments, devices, logs, health) to any open browser. Local
commands from the UI (scan, ping) are handed to a callback on the agent.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

import psutil
from aiohttp import WSMsgType, web

from .._types import DeviceInfo, DeviceStatus, iso_now
from ..utils.version import VERSION

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 100
HEALTH_INTERVAL = 5.0
LOCAL_COMMANDS = ("scan_now", "ping")

CommandHandler = Callable[[str, dict], Awaitable[None]]


class AgentUIServer:
    """aiohttp app holding the agent's UI state and its websocket clients."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3001,
        agent_name: str = "VelocityPulse Agent",
        dashboard_url: str = "",
        on_command: Optional[CommandHandler] = None,
    ):
        self.host = host
        self.port = port
        self.on_command = on_command
        self.started_at = iso_now()
        self._started_monotonic = time.monotonic()

        self.state: dict[str, Any] = {
            "agentId": None,
            "agentName": agent_name,
            "organizationId": None,
            "dashboardUrl": dashboard_url,
            "version": VERSION,
            "connected": False,
            "lastHeartbeat": None,
            "segments": [],
            "devices": [],
            "scanning": False,
            "health": self._health(),
            "versionInfo": {"current": VERSION, "latest": None, "updateAvailable": False},
        }
        self.logs: deque[dict[str, str]] = deque(maxlen=MAX_LOG_ENTRIES)

        self._clients: set[web.WebSocketResponse] = set()
        self._runner: Optional[web.AppRunner] = None
        self._health_task: Optional[asyncio.Task] = None
        self._pending_sends: set[asyncio.Task] = set()
        self._command_tasks: set[asyncio.Task] = set()

        self.app = web.Application()
        self.app.router.add_get("/api/status", self._handle_status)
        self.app.router.add_post("/api/scan", self._handle_scan)
        self.app.router.add_post("/api/ping", self._handle_ping)
        self.app.router.add_get("/ws", self._handle_ws)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info(f"Agent UI available at http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._health_task:
            self._health_task.cancel()
            self._health_task = None
        for task in list(self._command_tasks):
            task.cancel()
        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # =========================================================================
    # Broadcast
    # =========================================================================

    def snapshot(self) -> dict[str, Any]:
        return {**self.state, "logs": list(self.logs)}

    def _emit(self, event: str, data: Any) -> None:
        """Queue an event for every connected websocket."""
        if not self._clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        message = {"type": event, "payload": data}
        for ws in list(self._clients):
            task = loop.create_task(self._send(ws, message))
            self._pending_sends.add(task)
            task.add_done_callback(self._pending_sends.discard)

    async def _send(self, ws: web.WebSocketResponse, message: dict[str, Any]) -> None:
        if ws.closed:
            self._clients.discard(ws)
            return
        try:
            await ws.send_json(message)
        except (ConnectionError, RuntimeError):
            self._clients.discard(ws)

    # =========================================================================
    # State updates (called from the agent loops)
    # =========================================================================

    def update_connection(
        self,
        connected: bool,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> None:
        self.state["connected"] = connected
        if agent_id:
            self.state["agentId"] = agent_id
        if organization_id:
            self.state["organizationId"] = organization_id
        self.state["lastHeartbeat"] = iso_now()
        self._emit("connection", {
            "connected": connected,
            "agentId": self.state["agentId"],
            "organizationId": self.state["organizationId"],
            "lastHeartbeat": self.state["lastHeartbeat"],
        })

    def update_segments(self, segments: list[dict[str, Any]]) -> None:
        self.state["segments"] = segments
        self.state["scanning"] = any(s.get("scanning") for s in segments)
        self._emit("segments", segments)

    def update_segment_scanning(self, segment_id: str, scanning: bool) -> None:
        for segment in self.state["segments"]:
            if segment["id"] == segment_id:
                segment["scanning"] = scanning
                if not scanning:
                    segment["lastScan"] = iso_now()
        self.state["scanning"] = any(s.get("scanning") for s in self.state["segments"])
        self._emit("segments", self.state["segments"])
        self._emit("scanning", self.state["scanning"])

    def update_devices(self, devices: list[DeviceInfo]) -> None:
        self.state["devices"] = [d.to_dict() for d in devices]
        self._emit("devices", self.state["devices"])

    def update_device_status(
        self,
        device_id: str,
        status: DeviceStatus,
        response_time: Optional[float] = None,
    ) -> None:
        for device in self.state["devices"]:
            if device["id"] == device_id:
                device["status"] = status.value
                device["responseTime"] = response_time
                device["lastCheck"] = iso_now()
                self._emit("device_status", {
                    "id": device_id,
                    "status": status.value,
                    "responseTime": response_time,
                })
                return

    def update_version_info(self, latest: Optional[str], update_available: bool) -> None:
        self.state["versionInfo"] = {
            "current": VERSION,
            "latest": latest,
            "updateAvailable": update_available,
        }
        self._emit("version_info", self.state["versionInfo"])

    def add_log(self, level: str, message: str) -> None:
        entry = {"timestamp": iso_now(), "level": level, "message": message}
        self.logs.appendleft(entry)
        self._emit("log", entry)

    # =========================================================================
    # Health
    # =========================================================================

    def _health(self) -> dict[str, Any]:
        process = psutil.Process(os.getpid())
        return {
            "uptime": round(time.monotonic() - self._started_monotonic, 1),
            "memoryUsedMB": round(process.memory_info().rss / 1024 / 1024),
            "memoryTotalMB": round(psutil.virtual_memory().total / 1024 / 1024),
            "cpuUsage": psutil.cpu_percent(interval=None),
            "startedAt": self.started_at,
        }

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(HEALTH_INTERVAL)
            self.state["health"] = self._health()
            self._emit("health", self.state["health"])

    # =========================================================================
    # HTTP handlers
    # =========================================================================

    def _dispatch_later(self, command: str) -> None:
        task = asyncio.create_task(self._dispatch(command))
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def _dispatch(self, command: str, payload: Optional[dict] = None) -> None:
        if self.on_command is None:
            logger.debug(f"No command handler for local command {command}")
            return
        try:
            await self.on_command(command, payload or {})
        except Exception as e:
            logger.error(f"Local command {command} failed: {e}")

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Handle GET /api/status."""
        return web.json_response(self.snapshot())

    async def _handle_scan(self, request: web.Request) -> web.Response:
        """Handle POST /api/scan."""
        self._dispatch_later("scan_now")
        return web.json_response({"success": True, "message": "Scan triggered"})

    async def _handle_ping(self, request: web.Request) -> web.Response:
        """Handle POST /api/ping."""
        self._dispatch_later("ping")
        return web.json_response({"success": True, "message": "Ping sent"})

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        """Handle GET /ws: push state, accept {"type": "command", "command": ...} frames."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._clients.add(ws)
        logger.debug(f"UI client connected ({len(self._clients)} total)")
        await ws.send_json({"type": "state", "payload": self.snapshot()})

        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    message = msg.json()
                except ValueError:
                    continue
                if not isinstance(message, dict) or message.get("type") != "command":
                    continue
                command = message.get("command")
                if command in LOCAL_COMMANDS:
                    payload = message.get("payload")
                    await self._dispatch(command, payload if isinstance(payload, dict) else None)
                else:
                    logger.debug(f"Ignoring unsupported UI command: {command}")
        finally:
            self._clients.discard(ws)
            logger.debug(f"UI client disconnected ({len(self._clients)} remaining)")

        return ws
