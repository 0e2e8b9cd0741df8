"""
VelocityPulse agent coordinator.

Runs the four long-lived loops (heartbeat, scan, status check, remote
monitor) over shared segment and device state, plus the realtime command
channel and the local UI server.

Exit codes: 0 after a signal shutdown, 1 after a fatal error, 75 when a
restart or upgrade asks the service manager to start the agent again.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Iterator, Optional

from pydantic import ValidationError

from ._types import (
    AgentCommand,
    DeviceInfo,
    DeviceStatus,
    DiscoveredDevice,
    NetworkSegment,
    SegmentType,
    StatusReport,
    iso_now,
)
from .api.client import ControllerClient, get_hostname
from .api.realtime import RealtimeClient
from .commands import EXIT_RESTART, CommandError, CommandProcessor
from .config import AgentConfig, load_config
from .log import attach_ui_handler, setup_logging
from .monitor.hysteresis import HysteresisTracker
from .monitor.probe import ProbeResult, probe_device
from .monitor.scheduler import RemoteMonitorScheduler
from .scanner.discover import DeviceDiscovery
from .scanner.ping import is_network_or_broadcast
from .ui.server import AgentUIServer
from .upgrade.upgrader import perform_upgrade
from .utils.ip_utils import is_in_cidr
from .utils.network_detect import auto_segment_name, get_primary_local_network
from .utils.pool import run_pool
from .utils.version import PRODUCT_NAME, VERSION, is_newer_version

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1

HEARTBEAT_CEILING = 60
HEARTBEAT_RETRY_START = 2
HEARTBEAT_RETRY_MAX = 60
SCAN_TICK = 5
REMOTE_TICK = 5
REMOTE_IDLE_POLL = 30
REMOTE_INITIAL_DELAY = 10
AUTO_SEGMENT_DELAY = 5
STATUS_PROBE_CONCURRENCY = 10


class SegmentBusyError(CommandError):
    def __init__(self, segment_id: str):
        super().__init__("Segment already scanning")
        self.segment_id = segment_id


@dataclass
class SegmentScanState:
    """Per-segment scheduling state; `scanning` is only set inside claim()."""
    segment: NetworkSegment
    last_scan: float = 0.0
    last_scan_at: Optional[str] = None
    scanning: bool = False

    def is_due(self, now: float) -> bool:
        return not self.scanning and now - self.last_scan >= self.segment.scan_interval_seconds

    @contextmanager
    def claim(self) -> Iterator["SegmentScanState"]:
        """Hold the segment's scan slot; released on every exit path."""
        if self.scanning:
            raise SegmentBusyError(self.segment.id)
        self.scanning = True
        try:
            yield self
        finally:
            self.scanning = False
            self.last_scan_at = iso_now()


class DeviceStore:
    """
    Devices known to this agent, keyed by IP.

    All writes are per-device merges, so a scan finishing while a status
    check is in progress never discards the other's fields.
    """

    def __init__(self):
        self._devices: dict[str, DeviceInfo] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, ip: str) -> bool:
        return ip in self._devices

    def get(self, ip: str) -> Optional[DeviceInfo]:
        return self._devices.get(ip)

    def ips(self) -> list[str]:
        return list(self._devices)

    def values(self) -> list[DeviceInfo]:
        return list(self._devices.values())

    def merge_discovered(self, devices: list[DiscoveredDevice]) -> None:
        """Replace identity fields; keep status, response time and last check."""
        for device in devices:
            ip = device.ip_address
            existing = self._devices.get(ip)
            self._devices[ip] = DeviceInfo(
                id=ip,
                name=device.hostname or ip,
                ip=ip,
                mac=device.mac_address,
                status=existing.status if existing else DeviceStatus.UNKNOWN,
                response_time=existing.response_time if existing else None,
                last_check=existing.last_check if existing else None,
            )

    def update_status(
        self,
        ip: str,
        status: DeviceStatus,
        response_time: Optional[float] = None,
    ) -> Optional[DeviceInfo]:
        device = self._devices.get(ip)
        if device is None:
            return None
        device.status = status
        device.response_time = response_time
        device.last_check = iso_now()
        return device

    def count_in(self, cidr: str) -> int:
        return sum(1 for ip in self._devices if is_in_cidr(ip, cidr))

    def retain(self, ips: Iterable[str]) -> list[str]:
        """Drop devices whose IP is not in ips; returns the dropped IPs."""
        keep = set(ips)
        dropped = [ip for ip in self._devices if ip not in keep]
        for ip in dropped:
            del self._devices[ip]
        return dropped


class VelocityPulseAgent:
    """
    Main agent service.

    Shared state lives on this object; every loop reads and writes it
    between awaits, so no loop sees a half-applied update.
    """

    def __init__(
        self,
        config: AgentConfig,
        client: Optional[ControllerClient] = None,
        discovery: Optional[DeviceDiscovery] = None,
        ui: Optional[AgentUIServer] = None,
        probe: Callable[[str], Awaitable[ProbeResult]] = probe_device,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the agent.

        Args:
            config: Agent configuration
            client: Dashboard client (built from config when omitted)
            discovery: Discovery orchestrator
            ui: Local UI server; a detached instance is used when the UI is disabled
            probe: Reachability probe for the status loop
            clock: Monotonic clock for scan scheduling
        """
        self.config = config
        self.client = client or ControllerClient(config.dashboard_url, config.api_key)
        self.discovery = discovery or DeviceDiscovery()
        self.ui = ui or AgentUIServer(
            config.ui_host,
            config.ui_port,
            agent_name=config.agent_name,
            dashboard_url=config.dashboard_url,
        )
        self.ui.on_command = self.handle_ui_command
        self.probe = probe
        self.clock = clock

        self.agent_id: Optional[str] = None
        self.organization_id: Optional[str] = None
        self.segments: dict[str, SegmentScanState] = {}
        self.devices = DeviceStore()
        self.segment_ips: dict[str, set[str]] = {}
        self.hysteresis = HysteresisTracker(config.status_failure_threshold)
        self.scheduler = RemoteMonitorScheduler(clock=clock)
        self.realtime: Optional[RealtimeClient] = None
        self.commands = CommandProcessor(
            self.client,
            config,
            scanner=self,
            shutdown=self.request_shutdown,
            upgrader=perform_upgrade,
        )

        self.exit_code = EXIT_OK
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._loop_tasks: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._ui_log_handler: Optional[logging.Handler] = None
        self._upgrade_attempted: Optional[str] = None
        self._retry_delay = HEARTBEAT_RETRY_START

        self.scan_tick = SCAN_TICK
        self.remote_tick = REMOTE_TICK
        self.remote_idle_poll = REMOTE_IDLE_POLL
        self.remote_initial_delay = REMOTE_INITIAL_DELAY
        self.auto_segment_delay = AUTO_SEGMENT_DELAY

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> int:
        """Run until shutdown is requested or a loop dies; returns the exit code."""
        logger.info(f"Starting {PRODUCT_NAME} v{VERSION} ({self.config.agent_name})")
        logger.info(f"Dashboard: {self.config.dashboard_url}")
        self._running = True

        if self.config.ui_enabled:
            try:
                await self.ui.start()
                self._ui_log_handler = attach_ui_handler(self.ui.add_log)
            except OSError as e:
                logger.warning(f"Agent UI disabled: {e}")

        await self.discovery.initialize()

        self._loop_tasks = [
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
            asyncio.create_task(self._scan_loop(), name="scan"),
            asyncio.create_task(self._status_loop(), name="status"),
            asyncio.create_task(self._remote_loop(), name="remote"),
        ]
        self._spawn(self._auto_segment_check())

        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait())
        done, _ = await asyncio.wait(
            [*self._loop_tasks, shutdown_waiter],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in done:
            if task is shutdown_waiter or task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.critical(f"{task.get_name()} loop crashed: {error}", exc_info=error)
                self.exit_code = EXIT_FATAL
            elif not self._shutdown_event.is_set():
                logger.critical(f"{task.get_name()} loop exited unexpectedly")
                self.exit_code = EXIT_FATAL

        shutdown_waiter.cancel()
        await self.stop()
        return self.exit_code

    async def request_shutdown(self, exit_code: int = EXIT_OK) -> None:
        """Ask run() to stop; the first non-zero exit code wins."""
        if self.exit_code == EXIT_OK:
            self.exit_code = exit_code
        logger.info(f"Shutdown requested (exit code {exit_code})")
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop loops, close the realtime channel and the UI server."""
        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        current = asyncio.current_task()
        tasks = [t for t in [*self._loop_tasks, *self._background] if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_tasks = []

        if self.realtime:
            await self.realtime.disconnect()
            self.realtime = None

        if self._ui_log_handler:
            logging.getLogger().removeHandler(self._ui_log_handler)
            self._ui_log_handler = None
        await self.ui.stop()
        await self.client.close()
        logger.info("Agent stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested first; False means stop."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return True

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def apply_segments(self, segments: list[NetworkSegment]) -> None:
        """Diff the dashboard's segment list into shared state."""
        current_ids = {segment.id for segment in segments}

        removed = [segment_id for segment_id in self.segments if segment_id not in current_ids]
        for segment_id in removed:
            logger.info(f"Segment removed: {segment_id}")
            del self.segments[segment_id]
            self.segment_ips.pop(segment_id, None)
        if removed:
            self.drop_stale_devices()

        for segment in segments:
            if segment.is_auto_registered:
                segment.scan_interval_seconds = self.config.auto_scan_interval
            state = self.segments.get(segment.id)
            if state is None:
                logger.info(f"Segment added: {segment.name} ({segment.cidr})")
                self.segments[segment.id] = SegmentScanState(segment)
            else:
                state.segment = segment

    def segments_for_ui(self) -> list[dict[str, Any]]:
        return [
            {
                "id": state.segment.id,
                "name": state.segment.name,
                "cidr": state.segment.cidr,
                "lastScan": state.last_scan_at,
                "deviceCount": self.devices.count_in(state.segment.cidr),
                "scanning": state.scanning,
            }
            for state in self.segments.values()
        ]

    async def heartbeat_once(self) -> bool:
        response = await self.client.heartbeat(VERSION, get_hostname())
        if response is None:
            self.ui.update_connection(False)
            return False

        self.agent_id = response.get("agent_id") or self.agent_id
        self.organization_id = response.get("organization_id") or self.organization_id
        logger.debug(f"Heartbeat OK - Agent: {self.agent_id}, Org: {self.organization_id}")

        segments = []
        for item in response.get("segments") or []:
            try:
                segments.append(NetworkSegment.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed segment {item}: {e}")
        self.apply_segments(segments)

        self.ui.update_connection(True, self.agent_id, self.organization_id)
        self.ui.update_segments(self.segments_for_ui())

        latest = response.get("latest_agent_version")
        if response.get("upgrade_available") and latest:
            logger.info(f"Upgrade available: {VERSION} -> {latest}")
            self.ui.update_version_info(latest, True)
            self._maybe_auto_upgrade(latest, response.get("agent_download_url"))
        else:
            self.ui.update_version_info(None, False)

        pending = []
        for item in response.get("pending_commands") or []:
            try:
                pending.append(AgentCommand.from_dict(item))
            except (KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring malformed command {item}: {e}")
        if pending:
            logger.info(f"Received {len(pending)} pending command(s)")
            self._spawn(self.commands.process_commands(pending))

        supabase_url = response.get("supabase_url") or self.config.supabase_url
        supabase_key = response.get("supabase_anon_key") or self.config.supabase_anon_key
        if supabase_url and supabase_key and self.agent_id:
            await self.setup_realtime(supabase_url, supabase_key, self.agent_id)

        return True

    def _maybe_auto_upgrade(self, latest: str, download_url: Optional[str]) -> None:
        if not download_url or latest == self._upgrade_attempted:
            return
        if not is_newer_version(latest, VERSION):
            return
        reason = self.commands.upgrade_block_reason(latest)
        if reason:
            logger.debug(f"Not auto-upgrading to {latest}: {reason}")
            return
        self._upgrade_attempted = latest
        logger.info(f"Auto-upgrading to {latest}")
        self._spawn(self.commands.run_upgrade(latest, download_url))

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                ok = await self.heartbeat_once()
            except Exception as e:
                logger.error(f"Heartbeat error: {e}")
                ok = False

            if ok:
                self._retry_delay = HEARTBEAT_RETRY_START
                delay = min(self.config.heartbeat_interval, HEARTBEAT_CEILING)
            else:
                delay = self._retry_delay
                logger.warning(f"Heartbeat failed, retrying in {delay}s")
                self._retry_delay = min(self._retry_delay * 2, HEARTBEAT_RETRY_MAX)

            if not await self._sleep(delay):
                return

    # =========================================================================
    # Realtime
    # =========================================================================

    async def setup_realtime(self, supabase_url: str, anon_key: str, agent_id: str) -> None:
        if not self.config.enable_realtime:
            return
        if self.realtime is None:
            self.realtime = RealtimeClient(
                supabase_url,
                anon_key,
                agent_id,
                on_command=self._on_realtime_command,
                on_connection_change=self._on_realtime_connection,
            )
            await self.realtime.connect()
        else:
            await self.realtime.update_credentials(supabase_url, anon_key, agent_id)

    async def _on_realtime_command(self, command: AgentCommand) -> None:
        logger.info(f"Realtime command: {command.command_type}")
        await self.commands.process(command)

    def _on_realtime_connection(self, connected: bool) -> None:
        if connected:
            logger.info("Realtime connected")
        else:
            logger.warning("Realtime disconnected")

    # =========================================================================
    # Scanning
    # =========================================================================

    async def scan(self, state: SegmentScanState) -> list[DiscoveredDevice]:
        """Discover one segment, merge into the device table and upload."""
        segment = state.segment
        with state.claim():
            state.last_scan = self.clock()
            logger.info(f"Scanning segment: {segment.name} ({segment.cidr})")
            self.ui.update_segment_scanning(segment.id, True)
            try:
                devices = await self.discovery.discover_devices(segment.cidr)
                logger.info(f"Discovered {len(devices)} devices in {segment.name}")

                self.devices.merge_discovered(devices)
                self.segment_ips[segment.id] = {d.ip_address for d in devices}
                self.drop_stale_devices()
                self.ui.update_devices(self.devices.values())

                if devices:
                    result = await self.client.upload_discovered_devices(segment.id, devices)
                    if result is not None:
                        logger.info(
                            f"Discovered {len(devices)} devices "
                            f"({result.get('created', 0)} new, {result.get('updated', 0)} updated)"
                        )
                return devices
            finally:
                self.ui.update_segment_scanning(segment.id, False)

    def drop_stale_devices(self) -> list[str]:
        """Forget devices missing from every segment's latest scan."""
        active: set[str] = set()
        for segment_id in self.segments:
            active |= self.segment_ips.get(segment_id, set())

        dropped = self.devices.retain(active)
        if dropped:
            logger.info(f"Dropped {len(dropped)} devices no longer seen: {', '.join(dropped)}")
        self.hysteresis.prune(self.devices.ips())
        return dropped

    async def scan_due_segments(self) -> None:
        now = self.clock()
        for state in list(self.segments.values()):
            if not state.is_due(now):
                continue
            try:
                await self.scan(state)
            except SegmentBusyError:
                continue
            except Exception as e:
                logger.error(f"Scan failed for {state.segment.name}: {e}")

    async def scan_all_segments(self) -> tuple[int, int]:
        """Scan every idle segment now; returns (segments_scanned, devices_found)."""
        scanned = 0
        found = 0
        for state in list(self.segments.values()):
            if state.scanning:
                continue
            try:
                devices = await self.scan(state)
            except SegmentBusyError:
                continue
            scanned += 1
            found += len(devices)
        return scanned, found

    async def scan_segment_by_id(self, segment_id: str) -> int:
        state = self.segments.get(segment_id)
        if state is None:
            raise CommandError("Segment not found")
        devices = await self.scan(state)
        return len(devices)

    async def _scan_loop(self) -> None:
        while self._running:
            await self.scan_due_segments()
            if not await self._sleep(self.scan_tick):
                return

    async def _auto_segment_check(self) -> None:
        if not await self._sleep(self.auto_segment_delay):
            return
        await self.auto_register_segment()

    async def auto_register_segment(self) -> Optional[NetworkSegment]:
        """Register the primary local network when the dashboard assigned nothing."""
        if not self.config.enable_auto_scan or self.segments:
            return None

        logger.info("No segments assigned - attempting auto-detection")
        network = get_primary_local_network()
        if network is None:
            logger.warning("Could not detect local network for auto-scan")
            return None

        name = auto_segment_name(network)
        logger.info(f"Detected local network: {name}")
        segment = await self.client.register_auto_segment(network.cidr, name, network.interface_name)
        if segment is None:
            logger.warning(f"Failed to register auto-segment {network.cidr}")
            return None

        segment.is_auto_registered = True
        segment.scan_interval_seconds = self.config.auto_scan_interval
        self.segments[segment.id] = SegmentScanState(segment)
        self.ui.update_segments(self.segments_for_ui())
        logger.info(f"Auto-registered segment: {segment.name}")
        return segment

    # =========================================================================
    # Status checks
    # =========================================================================

    async def _safe_probe(self, ip: str) -> ProbeResult:
        try:
            return await self.probe(ip)
        except Exception as e:
            logger.debug(f"Probe error for {ip}: {e}")
            return ProbeResult(DeviceStatus.OFFLINE)

    async def check_status_once(self) -> list[StatusReport]:
        """Probe every known device and report the dashboard-tracked ones."""
        if not len(self.devices):
            logger.debug("No devices to monitor")
            return []

        monitored = await self.client.get_devices_to_monitor() or []
        by_ip = {d.ip_address: d for d in monitored if d.ip_address}
        self.hysteresis.threshold = self.config.status_failure_threshold

        targets = []
        for ip in self.devices.ips():
            if is_network_or_broadcast(ip):
                self.devices.update_status(ip, DeviceStatus.OFFLINE)
                self.ui.update_device_status(ip, DeviceStatus.OFFLINE)
            else:
                targets.append(ip)

        logger.debug(f"Checking status of {len(targets)} discovered devices")
        results = dict(await run_pool(targets, self._safe_probe, STATUS_PROBE_CONCURRENCY))

        reports = []
        for ip in targets:
            probe = results[ip]
            status = self.hysteresis.apply(ip, probe.status)
            self.devices.update_status(ip, status, probe.response_time_ms)
            self.ui.update_device_status(ip, status, probe.response_time_ms)

            tracked = by_ip.get(ip)
            if tracked is not None:
                reports.append(StatusReport(
                    device_id=tracked.id,
                    ip_address=ip,
                    status=status,
                    response_time_ms=probe.response_time_ms,
                    check_type=tracked.check_type,
                ))

        self.hysteresis.prune(targets)
        self.ui.update_devices(self.devices.values())

        if reports:
            result = await self.client.upload_status_reports(reports)
            if result is not None:
                logger.debug(f"Status upload: {result.get('processed')} processed")
        return reports

    async def _status_loop(self) -> None:
        while self._running:
            try:
                await self.check_status_once()
            except Exception as e:
                logger.error(f"Status check failed: {e}")
            if not await self._sleep(self.config.status_check_interval):
                return

    # =========================================================================
    # Remote monitoring
    # =========================================================================

    async def check_remote_once(self) -> float:
        """Run due remote checks; returns how long to wait before the next pass."""
        remote_ids = {
            segment_id for segment_id, state in self.segments.items()
            if state.segment.segment_type == SegmentType.REMOTE_MONITOR
        }
        if not remote_ids:
            return self.remote_idle_poll

        monitored = await self.client.get_devices_to_monitor()
        if monitored is None:
            return self.remote_idle_poll

        remote_devices = [
            d for d in monitored
            if d.is_monitored and d.network_segment_id in remote_ids
        ]
        if not remote_devices:
            self.scheduler.prune([])
            return self.remote_idle_poll

        reports = await self.scheduler.run_due_checks(remote_devices)
        if reports:
            result = await self.client.upload_status_reports(reports)
            if result is not None:
                logger.debug(f"Remote monitor: {result.get('processed')} reports uploaded")
        return self.remote_tick

    async def _remote_loop(self) -> None:
        if not await self._sleep(self.remote_initial_delay):
            return
        while self._running:
            try:
                delay = await self.check_remote_once()
            except Exception as e:
                logger.error(f"Remote monitor error: {e}")
                delay = self.remote_tick
            if not await self._sleep(delay):
                return

    # =========================================================================
    # Local UI commands
    # =========================================================================

    async def handle_ui_command(self, command: str, payload: dict) -> None:
        logger.info(f"UI command received: {command}")
        if command == "scan_now":
            scanned, found = await self.scan_all_segments()
            logger.info(f"UI scan completed: {scanned} segments, {found} devices")
        elif command == "ping":
            latency = await self.client.send_pong()
            if latency is not None:
                logger.info(f"Dashboard ping: {latency}ms")
            else:
                logger.warning("Dashboard ping failed")


def main():
    """Entry point for the velocitypulse-agent command."""
    parser = argparse.ArgumentParser(description=f"{PRODUCT_NAME}")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--log-level", type=str, help="Override log level")
    args = parser.parse_args()

    setup_logging(args.log_level or "info")

    try:
        config = load_config(Path(args.config) if args.config else None)
        if args.log_level:
            config.log_level = args.log_level
    except (ValidationError, FileNotFoundError, ValueError) as e:
        logger.error(f"Config error: {e}")
        sys.exit(EXIT_FATAL)

    setup_logging(config.log_level, config.log_dir)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    agent = VelocityPulseAgent(config)

    def signal_handler():
        logger.info("Received shutdown signal")
        loop.create_task(agent.request_shutdown(EXIT_OK))

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    try:
        exit_code = loop.run_until_complete(agent.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        loop.run_until_complete(agent.stop())
        exit_code = EXIT_OK
    finally:
        loop.close()

    if exit_code == EXIT_RESTART:
        logger.info("Exiting for restart")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
