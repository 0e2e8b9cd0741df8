"""
Dashboard command processing.

Commands arrive from heartbeat polling and from the realtime channel and
both paths end here. Each command gets exactly one acknowledgment, except
ping, which the dashboard acknowledges itself when the pong arrives.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from ._types import AgentCommand, CommandType
from .api.client import ControllerClient
from .config import LOG_LEVELS, AgentConfig
from .log import set_level
from .upgrade.upgrader import UpgradeResult, perform_upgrade
from .utils.version import VERSION, should_auto_upgrade

logger = logging.getLogger(__name__)

EXIT_RESTART = 75
RESTART_ACK_GRACE = 1.0
RECENT_COMMAND_LIMIT = 500


class CommandError(Exception):
    """A command payload or target was invalid."""


class ConfigUpdateError(CommandError):
    """An update_config payload could not be applied."""


class ScanRunner(Protocol):
    """What the processor needs from the agent to run scan commands."""

    async def scan_all_segments(self) -> tuple[int, int]:
        ...

    async def scan_segment_by_id(self, segment_id: str) -> int:
        ...


Shutdown = Callable[[int], Awaitable[None]]
Upgrader = Callable[[str, str], Awaitable[UpgradeResult]]


# (config attribute, minimum) for numeric settings; None marks booleans.
CONFIG_UPDATE_FIELDS: dict[str, tuple[str, Optional[int]]] = {
    "heartbeatInterval": ("heartbeat_interval", 10),
    "statusCheckInterval": ("status_check_interval", 5),
    "statusFailureThreshold": ("status_failure_threshold", 0),
    "autoScanInterval": ("auto_scan_interval", 30),
    "enableAutoScan": ("enable_auto_scan", None),
}


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def validate_config_update(updates: Any) -> tuple[dict[str, Any], list[str]]:
    """
    Check an update_config payload field by field.

    Returns:
        (valid, rejected): valid maps payload keys to checked values,
        rejected lists keys whose type or range was wrong. Unknown keys
        are ignored.

    Raises:
        ConfigUpdateError: If the payload is not a mapping
    """
    if not isinstance(updates, dict):
        raise ConfigUpdateError("update_config payload must be an object")

    valid: dict[str, Any] = {}
    rejected: list[str] = []

    for key, (_, minimum) in CONFIG_UPDATE_FIELDS.items():
        if key not in updates:
            continue
        value = updates[key]
        if minimum is None:
            if isinstance(value, bool):
                valid[key] = value
            else:
                rejected.append(key)
            continue
        number = _as_int(value)
        if number is None or number < minimum:
            rejected.append(key)
        else:
            valid[key] = number

    if "logLevel" in updates:
        level = updates["logLevel"]
        if isinstance(level, str) and level in LOG_LEVELS:
            valid["logLevel"] = level
        else:
            rejected.append("logLevel")

    return valid, rejected


class CommandProcessor:
    """Dispatches commands and reports their outcome to the dashboard."""

    def __init__(
        self,
        client: ControllerClient,
        config: AgentConfig,
        scanner: ScanRunner,
        shutdown: Shutdown,
        upgrader: Upgrader = perform_upgrade,
        restart_grace: float = RESTART_ACK_GRACE,
    ):
        self.client = client
        self.config = config
        self.scanner = scanner
        self.shutdown = shutdown
        self.upgrader = upgrader
        self.restart_grace = restart_grace

        self._in_flight: set[str] = set()
        self._recent: OrderedDict[str, None] = OrderedDict()

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process_commands(self, commands: Iterable[AgentCommand]) -> None:
        """Run commands one after another, skipping any not pending."""
        for command in commands:
            if command.is_pending:
                await self.process(command)

    async def process(self, command: AgentCommand) -> None:
        """Execute one delivery of a command; duplicate deliveries are dropped."""
        if command.id in self._in_flight or command.id in self._recent:
            logger.debug(f"Command {command.id} already handled, skipping")
            return

        self._in_flight.add(command.id)
        try:
            logger.info(f"Processing command: {command.command_type} ({command.id})")
            await self._execute(command)
        except Exception as e:
            logger.error(f"Command {command.command_type} failed: {e}")
            await self._ack(command, False, error=str(e) or type(e).__name__)
        finally:
            self._in_flight.discard(command.id)
            self._remember(command.id)

    def _remember(self, command_id: str) -> None:
        self._recent[command_id] = None
        while len(self._recent) > RECENT_COMMAND_LIMIT:
            self._recent.popitem(last=False)

    async def _ack(
        self,
        command: AgentCommand,
        success: bool,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            acked = await self.client.acknowledge_command(command.id, success, result, error)
        except Exception as e:
            logger.error(f"Failed to acknowledge command {command.id}: {e}")
            return
        if not acked:
            logger.error(f"Failed to acknowledge command {command.id}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _execute(self, command: AgentCommand) -> None:
        payload = command.payload or {}

        match command.kind:
            case CommandType.PING:
                await self._ping(command)
            case CommandType.SCAN_NOW:
                segments_scanned, devices_found = await self.scanner.scan_all_segments()
                logger.info(f"scan_now completed: {segments_scanned} segments, {devices_found} devices")
                await self._ack(command, True, {
                    "segments_scanned": segments_scanned,
                    "devices_found": devices_found,
                })
            case CommandType.SCAN_SEGMENT:
                segment_id = payload.get("segment_id")
                if not segment_id:
                    raise CommandError("segment_id required")
                devices_found = await self.scanner.scan_segment_by_id(segment_id)
                logger.info(f"scan_segment completed: {devices_found} devices found")
                await self._ack(command, True, {
                    "segment_id": segment_id,
                    "devices_found": devices_found,
                })
            case CommandType.UPDATE_CONFIG:
                applied, rejected = self.apply_config_update(payload)
                result: dict[str, Any] = {"applied": applied}
                if rejected:
                    result["rejected"] = rejected
                await self._ack(command, True, result)
            case CommandType.RESTART:
                logger.info("Executing restart command")
                await self._ack(command, True, {"restarting": True})
                await asyncio.sleep(self.restart_grace)
                logger.info("Restarting agent...")
                await self.shutdown(EXIT_RESTART)
            case CommandType.UPGRADE:
                await self._upgrade(command, payload)
            case _:
                logger.warning(f"Unknown command type: {command.command_type}")
                await self._ack(command, False, error=f"Unknown command: {command.command_type}")

    async def _ping(self, command: AgentCommand) -> None:
        latency = await self.client.send_pong(command.id)
        if latency is None:
            await self._ack(command, False, error="Pong delivery failed")
            return
        logger.info(f"Ping response sent, latency: {latency}ms")

    def apply_config_update(self, updates: Any) -> tuple[dict[str, Any], list[str]]:
        """Validate and apply an update_config payload to the live config."""
        valid, rejected = validate_config_update(updates)

        for key, value in valid.items():
            if key == "logLevel":
                self.config.log_level = value
                set_level(value)
            else:
                setattr(self.config, CONFIG_UPDATE_FIELDS[key][0], value)

        if rejected:
            logger.warning(f"Rejected config fields: {', '.join(rejected)}")
        logger.info(f"Config updated: {valid}")
        return valid, rejected

    # =========================================================================
    # Upgrade
    # =========================================================================

    def upgrade_block_reason(self, target_version: str) -> Optional[str]:
        if not self.config.enable_auto_upgrade:
            return "Auto-upgrade disabled - manual upgrade required"
        if not should_auto_upgrade(target_version, VERSION, self.config.auto_upgrade_on_minor):
            return "Upgrade blocked by policy (major version change)"
        return None

    async def _upgrade(self, command: AgentCommand, payload: dict[str, Any]) -> None:
        target_version = payload.get("target_version")
        download_url = payload.get("download_url")
        if not target_version or not download_url:
            raise CommandError("target_version and download_url required")

        logger.info(f"Upgrade requested: {VERSION} -> {target_version}")
        result = {"current_version": VERSION, "target_version": target_version}

        reason = self.upgrade_block_reason(target_version)
        if reason:
            logger.warning(f"Upgrade to {target_version} not performed: {reason}")
            await self._ack(command, True, {**result, "message": reason})
            return

        # The upgrade may end the process, so the ack goes first.
        await self._ack(command, True, {**result, "message": "Upgrade starting..."})
        await self.run_upgrade(target_version, download_url)

    async def run_upgrade(self, target_version: str, download_url: str) -> bool:
        """Install target_version and restart on success."""
        try:
            outcome = await self.upgrader(target_version, download_url)
        except Exception as e:
            logger.error(f"Upgrade failed: {e}")
            return False
        if not outcome.success:
            logger.error(f"Upgrade failed: {outcome.message}")
            return False
        logger.info(outcome.message)
        await self.shutdown(EXIT_RESTART)
        return True
