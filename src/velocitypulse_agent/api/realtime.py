"""
Realtime command channel.

Subscribes to inserts and updates on the dashboard's agent_commands table
through the Supabase realtime websocket (Phoenix channel protocol) so
commands arrive without waiting for the next heartbeat. Heartbeat polling
remains the fallback; this channel only shortens delivery latency.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode, urlparse

import aiohttp

from .._types import AgentCommand, CommandStatus

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 5.0
CHANNEL_HEARTBEAT_INTERVAL = 30.0
PROTOCOL_VERSION = "1.0.0"

CommandCallback = Callable[[AgentCommand], Awaitable[None]]
ConnectionCallback = Callable[[bool], None]


def websocket_url(supabase_url: str, anon_key: str) -> str:
    """Build the realtime websocket URL for a Supabase project URL."""
    parsed = urlparse(supabase_url)
    scheme = "ws" if parsed.scheme == "http" else "wss"
    query = urlencode({"apikey": anon_key, "vsn": PROTOCOL_VERSION})
    return f"{scheme}://{parsed.netloc}/realtime/v1/websocket?{query}"


def command_from_change(data: dict[str, Any]) -> Optional[AgentCommand]:
    """
    Turn a postgres_changes record into a command if it should be run.

    Inserts run when the new row is pending; updates run only on a
    transition into pending, so re-sent rows are not executed twice.
    """
    if not isinstance(data, dict):
        return None
    change_type = data.get("type") or data.get("eventType")
    record = data.get("record") or data.get("new") or {}
    old_record = data.get("old_record") or data.get("old") or {}
    if not isinstance(old_record, dict):
        old_record = {}

    if not isinstance(record, dict) or not record.get("id"):
        return None

    pending = CommandStatus.PENDING.value
    if change_type == "INSERT":
        if record.get("status") != pending:
            return None
    elif change_type == "UPDATE":
        if record.get("status") != pending or old_record.get("status") == pending:
            return None
    else:
        return None

    return AgentCommand.from_dict(record)


class RealtimeClient:
    """Push subscription to this agent's command rows."""

    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        agent_id: str,
        on_command: CommandCallback,
        on_connection_change: Optional[ConnectionCallback] = None,
        reconnect_delay: float = RECONNECT_DELAY,
        heartbeat_interval: float = CHANNEL_HEARTBEAT_INTERVAL,
    ):
        self.supabase_url = supabase_url
        self.anon_key = anon_key
        self.agent_id = agent_id
        self.on_command = on_command
        self.on_connection_change = on_connection_change
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval

        self._connected = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._dispatches: set[asyncio.Task] = set()
        self._refs = itertools.count(1)
        self._join_ref: Optional[str] = None
        self._pending_heartbeat: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def topic(self) -> str:
        return f"realtime:agent-commands-{self.agent_id}"

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Realtime channel {'subscribed' if connected else 'disconnected'}")
        if self.on_connection_change:
            self.on_connection_change(connected)

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def join_message(self) -> dict[str, Any]:
        row_filter = f"agent_id=eq.{self.agent_id}"
        changes = [
            {"event": event, "schema": "public", "table": "agent_commands", "filter": row_filter}
            for event in ("INSERT", "UPDATE")
        ]
        self._join_ref = self._next_ref()
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": changes,
                },
                "access_token": self.anon_key,
            },
            "ref": self._join_ref,
        }

    def heartbeat_message(self) -> dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Start the subscription loop in the background."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="realtime")

    async def disconnect(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_connected(False)

    async def update_credentials(self, supabase_url: str, anon_key: str, agent_id: str) -> None:
        """Reconnect with new credentials; no-op when nothing changed."""
        if (supabase_url, anon_key, agent_id) == (self.supabase_url, self.anon_key, self.agent_id):
            return
        logger.info("Realtime credentials changed, reconnecting")
        await self.disconnect()
        self.supabase_url = supabase_url
        self.anon_key = anon_key
        self.agent_id = agent_id
        await self.connect()

    async def _run(self) -> None:
        url = websocket_url(self.supabase_url, self.anon_key)

        while self._running:
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.ws_connect(url, heartbeat=None) as ws:
                        await self._session_loop(ws)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                logger.warning(f"Realtime connection error: {e or type(e).__name__}")
            except Exception as e:
                logger.error(f"Realtime session failed: {e or type(e).__name__}", exc_info=True)

            self._set_connected(False)
            if self._running:
                logger.info(f"Realtime reconnecting in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)

    async def _session_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._pending_heartbeat = None
        await ws.send_json(self.join_message())
        beat = asyncio.create_task(self._heartbeat(ws))
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except ValueError:
                        logger.debug(f"Ignoring non-JSON realtime frame: {msg.data[:100]}")
                        continue
                    if not self.handle_message(message):
                        return
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    return
        finally:
            beat.cancel()

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Send channel heartbeats; close the socket if one goes unanswered."""
        while not ws.closed:
            await asyncio.sleep(self.heartbeat_interval)
            if self._pending_heartbeat is not None:
                logger.warning("Realtime heartbeat not acknowledged, reconnecting")
                await ws.close()
                return
            message = self.heartbeat_message()
            self._pending_heartbeat = message["ref"]
            await ws.send_json(message)

    # =========================================================================
    # Messages
    # =========================================================================

    def handle_message(self, message: Any) -> bool:
        """
        Process one channel message.

        Returns False when the channel closed or errored and the socket
        should be dropped for a reconnect. Frames that are not JSON
        objects are ignored.
        """
        if not isinstance(message, dict):
            logger.debug(f"Ignoring non-object realtime frame: {str(message)[:100]}")
            return True

        event = message.get("event")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if message.get("topic") == "phoenix":
            if event == "phx_reply" and message.get("ref") == self._pending_heartbeat:
                self._pending_heartbeat = None
            return True

        if message.get("topic") != self.topic:
            return True

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self._set_connected(True)
                return True
            logger.error(f"Realtime subscription rejected: {payload.get('response')}")
            return False

        if event in ("phx_close", "phx_error"):
            logger.warning(f"Realtime channel {event[4:]}")
            return False

        if event == "system" and payload.get("status") == "error":
            logger.error(f"Realtime channel error: {payload.get('message')}")
            return False

        if event == "postgres_changes":
            command = command_from_change(payload.get("data") or {})
            if command is not None:
                logger.info(f"Realtime command received: {command.command_type} ({command.id})")
                self._dispatch(command)

        return True

    def _dispatch(self, command: AgentCommand) -> None:
        task = asyncio.create_task(self._deliver(command))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    async def _deliver(self, command: AgentCommand) -> None:
        try:
            await self.on_command(command)
        except Exception as e:
            logger.error(f"Realtime command handler failed for {command.id}: {e}")
