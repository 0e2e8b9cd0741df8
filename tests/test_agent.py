"""
Tests for the agent coordinator: shared state, loops and the scan-to-report path.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from velocitypulse_agent._types import (
    CheckResult,
    CheckType,
    DeviceStatus,
    DeviceToMonitor,
    DiscoveredDevice,
    NetworkSegment,
    SegmentType,
)
from velocitypulse_agent.agent import (
    EXIT_FATAL,
    DeviceStore,
    SegmentBusyError,
    SegmentScanState,
    VelocityPulseAgent,
)
from velocitypulse_agent.commands import EXIT_RESTART, CommandError
from velocitypulse_agent.monitor.probe import ProbeResult
from velocitypulse_agent.scanner.discover import DeviceDiscovery, EnrichmentOptions
from velocitypulse_agent.utils.network_detect import LocalNetwork


def make_client():
    client = MagicMock()
    client.heartbeat = AsyncMock(return_value=None)
    client.upload_discovered_devices = AsyncMock(return_value={"created": 1, "updated": 0})
    client.get_devices_to_monitor = AsyncMock(return_value=[])
    client.upload_status_reports = AsyncMock(return_value={"processed": 1, "errors": []})
    client.register_auto_segment = AsyncMock(return_value=None)
    client.acknowledge_command = AsyncMock(return_value=True)
    client.send_pong = AsyncMock(return_value=10)
    client.close = AsyncMock()
    return client


def make_discovery(devices=None):
    discovery = MagicMock()
    discovery.initialize = AsyncMock()
    discovery.discover_devices = AsyncMock(return_value=devices or [])
    return discovery


def segment(segment_id="seg-1", cidr="192.168.1.0/24", **kwargs):
    return NetworkSegment(id=segment_id, name=segment_id, cidr=cidr, **kwargs)


class FakeClock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def client():
    return make_client()


@pytest.fixture
def agent(agent_config, client):
    return VelocityPulseAgent(agent_config, client=client, discovery=make_discovery(),
                              clock=FakeClock())


class TestDeviceStore:
    """Tests for the shared device table."""

    def test_merge_keeps_status_fields(self):
        store = DeviceStore()
        store.merge_discovered([DiscoveredDevice(ip_address="10.0.0.1")])
        store.update_status("10.0.0.1", DeviceStatus.ONLINE, 3.0)

        store.merge_discovered([DiscoveredDevice(ip_address="10.0.0.1", hostname="nas",
                                                 mac_address="AA:BB:CC:DD:EE:FF")])

        device = store.get("10.0.0.1")
        assert device.name == "nas"
        assert device.mac == "AA:BB:CC:DD:EE:FF"
        assert device.status == DeviceStatus.ONLINE
        assert device.response_time == 3.0
        assert device.last_check is not None
        assert len(store) == 1

    def test_update_unknown_ip(self):
        assert DeviceStore().update_status("10.0.0.9", DeviceStatus.ONLINE) is None

    def test_count_in(self):
        store = DeviceStore()
        store.merge_discovered([DiscoveredDevice(ip_address=ip)
                                for ip in ("10.0.0.1", "10.0.0.2", "10.0.1.1")])
        assert store.count_in("10.0.0.0/24") == 2

    def test_retain(self):
        store = DeviceStore()
        store.merge_discovered([DiscoveredDevice(ip_address=ip) for ip in ("10.0.0.1", "10.0.0.2")])

        assert store.retain(["10.0.0.2", "10.0.0.9"]) == ["10.0.0.1"]
        assert store.ips() == ["10.0.0.2"]


class TestSegmentScanState:
    """Tests for the per-segment scan guard."""

    def test_claim_excludes_second_scan(self):
        state = SegmentScanState(segment())
        with state.claim():
            assert state.scanning
            with pytest.raises(SegmentBusyError):
                with state.claim():
                    pass
        assert not state.scanning
        assert state.last_scan_at is not None

    def test_claim_released_on_error(self):
        state = SegmentScanState(segment())
        with pytest.raises(RuntimeError):
            with state.claim():
                raise RuntimeError("discovery blew up")
        assert not state.scanning

    def test_is_due(self):
        state = SegmentScanState(segment(scan_interval_seconds=300), last_scan=1000.0)
        assert not state.is_due(1299.0)
        assert state.is_due(1300.0)
        state.scanning = True
        assert not state.is_due(5000.0)


class TestSegments:
    """Tests for segment assignment diffing and auto-registration."""

    def test_apply_segments_diff(self, agent):
        agent.apply_segments([segment("a"), segment("b")])
        agent.segments["a"].last_scan = 123.0

        agent.apply_segments([segment("a", cidr="10.1.0.0/24"), segment("c")])

        assert set(agent.segments) == {"a", "c"}
        assert agent.segments["a"].last_scan == 123.0
        assert agent.segments["a"].segment.cidr == "10.1.0.0/24"

    def test_auto_registered_interval(self, agent, agent_config):
        agent_config.auto_scan_interval = 120
        agent.apply_segments([segment("auto", is_auto_registered=True, scan_interval_seconds=900)])
        assert agent.segments["auto"].segment.scan_interval_seconds == 120

    @pytest.mark.asyncio
    async def test_auto_register_segment(self, agent, client):
        network = LocalNetwork("eth0", "192.168.1.20", "255.255.255.0", "192.168.1.0/24")
        client.register_auto_segment.return_value = segment("auto-1", cidr="192.168.1.0/24")

        with patch("velocitypulse_agent.agent.get_primary_local_network", return_value=network):
            registered = await agent.auto_register_segment()

        assert registered.is_auto_registered
        assert "auto-1" in agent.segments
        args = client.register_auto_segment.await_args.args
        assert args[0] == "192.168.1.0/24"
        assert args[2] == "eth0"

    @pytest.mark.asyncio
    async def test_auto_register_skipped_with_segments(self, agent, client):
        agent.apply_segments([segment()])
        assert await agent.auto_register_segment() is None
        client.register_auto_segment.assert_not_called()


class TestHeartbeat:
    """Tests for one heartbeat round trip."""

    @pytest.mark.asyncio
    async def test_heartbeat_applies_response(self, agent, client):
        client.heartbeat.return_value = {
            "agent_id": "agent-1",
            "organization_id": "org-1",
            "segments": [
                {"id": "seg-1", "name": "Office", "cidr": "192.168.1.0/24"},
                {"name": "broken"},
            ],
            "pending_commands": [
                {"id": "cmd-1", "command_type": "scan_segment",
                 "payload": {"segment_id": "seg-1"}, "status": "pending"},
            ],
        }

        assert await agent.heartbeat_once()
        await asyncio.gather(*agent._background)

        assert agent.agent_id == "agent-1"
        assert set(agent.segments) == {"seg-1"}
        assert agent.ui.state["connected"] is True
        agent.discovery.discover_devices.assert_awaited_once_with("192.168.1.0/24")
        client.acknowledge_command.assert_awaited_once()
        assert agent.realtime is None

    @pytest.mark.asyncio
    async def test_heartbeat_failure(self, agent):
        assert not await agent.heartbeat_once()
        assert agent.ui.state["connected"] is False

    @pytest.mark.asyncio
    async def test_auto_upgrade_respects_policy(self, agent, client):
        client.heartbeat.return_value = {
            "agent_id": "agent-1",
            "segments": [],
            "upgrade_available": True,
            "latest_agent_version": "99.0.0",
            "agent_download_url": "https://dash.example.com/agent.tar.gz",
        }
        agent.commands.run_upgrade = AsyncMock()

        await agent.heartbeat_once()

        agent.commands.run_upgrade.assert_not_called()
        assert agent.ui.state["versionInfo"]["updateAvailable"] is True

    @pytest.mark.asyncio
    async def test_malformed_pending_command_skipped(self, agent, client):
        client.heartbeat.return_value = {
            "agent_id": "agent-1",
            "segments": [],
            "pending_commands": [
                {"command_type": "scan_now", "status": "pending"},
                "scan_now",
                {"id": "cmd-2", "command_type": "ping", "status": "pending"},
            ],
        }

        assert await agent.heartbeat_once()
        await asyncio.gather(*agent._background)

        client.send_pong.assert_awaited_once_with("cmd-2")
        agent.discovery.discover_devices.assert_not_called()


class TestHeartbeatBackoff:
    """Tests for heartbeat loop timing."""

    async def _waits(self, agent, outcomes):
        """Run the heartbeat loop over outcomes and return each wait it asked for."""
        waits = []

        async def fake_sleep(seconds):
            waits.append(seconds)
            return len(waits) < len(outcomes)

        agent._sleep = fake_sleep
        agent.heartbeat_once = AsyncMock(side_effect=outcomes)
        agent._running = True
        await agent._heartbeat_loop()
        return waits

    @pytest.mark.asyncio
    async def test_backoff_resets_after_success(self, agent, agent_config):
        agent_config.heartbeat_interval = 120

        waits = await self._waits(agent, [False, False, False, True, False])

        assert waits == [2, 4, 8, 60, 2]

    @pytest.mark.asyncio
    async def test_backoff_capped(self, agent):
        waits = await self._waits(agent, [False] * 8)
        assert waits == [2, 4, 8, 16, 32, 60, 60, 60]

    @pytest.mark.asyncio
    async def test_success_waits_interval(self, agent, agent_config):
        agent_config.heartbeat_interval = 30
        assert await self._waits(agent, [True, True]) == [30, 30]

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self, agent, agent_config):
        agent_config.heartbeat_interval = 30

        waits = await self._waits(agent, [RuntimeError("dns failure"), ConnectionError(), True])

        assert waits == [2, 4, 30]


class TestScanning:
    """Tests for segment scans."""

    @pytest.mark.asyncio
    async def test_scan_merges_and_uploads(self, agent, client):
        agent.discovery.discover_devices.return_value = [DiscoveredDevice(ip_address="192.168.1.5")]
        agent.apply_segments([segment()])

        found = await agent.scan_segment_by_id("seg-1")

        assert found == 1
        assert "192.168.1.5" in agent.devices
        client.upload_discovered_devices.assert_awaited_once()
        assert not agent.segments["seg-1"].scanning

    @pytest.mark.asyncio
    async def test_rescan_forgets_vanished_device(self, agent):
        """Test a device missing from the latest scan leaves the store and hysteresis state."""
        agent.apply_segments([segment()])
        agent.probe = AsyncMock(return_value=ProbeResult(DeviceStatus.ONLINE, 1.0, "ping"))
        agent.discovery.discover_devices.return_value = [
            DiscoveredDevice(ip_address="192.168.1.5"),
            DiscoveredDevice(ip_address="192.168.1.6"),
        ]
        await agent.scan_segment_by_id("seg-1")
        await agent.check_status_once()
        assert set(agent.hysteresis.last_known_status) == {"192.168.1.5", "192.168.1.6"}

        agent.discovery.discover_devices.return_value = [DiscoveredDevice(ip_address="192.168.1.5")]
        await agent.scan_segment_by_id("seg-1")

        assert agent.devices.ips() == ["192.168.1.5"]
        assert set(agent.hysteresis.last_known_status) == {"192.168.1.5"}
        assert set(agent.hysteresis.failure_counts) == {"192.168.1.5"}

        agent.probe.reset_mock()
        await agent.check_status_once()
        agent.probe.assert_awaited_once_with("192.168.1.5")

    @pytest.mark.asyncio
    async def test_device_kept_while_another_segment_sees_it(self, agent):
        agent.apply_segments([segment("a", cidr="10.0.0.0/16"), segment("b", cidr="10.0.1.0/24")])
        agent.discovery.discover_devices.return_value = [DiscoveredDevice(ip_address="10.0.1.7")]
        await agent.scan_segment_by_id("a")
        await agent.scan_segment_by_id("b")

        agent.discovery.discover_devices.return_value = []
        await agent.scan_segment_by_id("a")

        assert "10.0.1.7" in agent.devices

    @pytest.mark.asyncio
    async def test_removed_segment_devices_dropped(self, agent):
        agent.apply_segments([segment("a"), segment("b", cidr="10.0.0.0/24")])
        agent.discovery.discover_devices.return_value = [DiscoveredDevice(ip_address="192.168.1.5")]
        await agent.scan_segment_by_id("a")
        agent.hysteresis.apply("192.168.1.5", DeviceStatus.ONLINE)

        agent.apply_segments([segment("b", cidr="10.0.0.0/24")])

        assert "192.168.1.5" not in agent.devices
        assert "a" not in agent.segment_ips
        assert agent.hysteresis.last_known_status == {}

    @pytest.mark.asyncio
    async def test_failed_scan_keeps_devices(self, agent):
        agent.apply_segments([segment()])
        agent.discovery.discover_devices.return_value = [DiscoveredDevice(ip_address="192.168.1.5")]
        await agent.scan_segment_by_id("seg-1")

        agent.discovery.discover_devices.side_effect = RuntimeError("arp failed")
        with pytest.raises(RuntimeError):
            await agent.scan_segment_by_id("seg-1")

        assert "192.168.1.5" in agent.devices

    @pytest.mark.asyncio
    async def test_scan_unknown_segment(self, agent):
        with pytest.raises(CommandError, match="Segment not found"):
            await agent.scan_segment_by_id("missing")

    @pytest.mark.asyncio
    async def test_scan_all_skips_busy(self, agent):
        agent.apply_segments([segment("a"), segment("b")])
        agent.segments["a"].scanning = True

        scanned, _ = await agent.scan_all_segments()

        assert scanned == 1
        agent.discovery.discover_devices.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scan_due_isolates_failures(self, agent):
        agent.apply_segments([segment("a"), segment("b")])
        agent.discovery.discover_devices.side_effect = [RuntimeError("arp failed"), []]

        await agent.scan_due_segments()

        assert agent.discovery.discover_devices.await_count == 2
        assert not any(s.scanning for s in agent.segments.values())


class TestStatusChecks:
    """Tests for the status-check cycle."""

    @pytest.mark.asyncio
    async def test_reports_only_tracked_devices(self, agent, client):
        agent.devices.merge_discovered([
            DiscoveredDevice(ip_address=ip) for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.255")
        ])
        client.get_devices_to_monitor.return_value = [
            DeviceToMonitor(id="dev-1", ip_address="10.0.0.1", check_type=CheckType.PING),
        ]
        probed = []

        async def probe(ip):
            probed.append(ip)
            return ProbeResult(DeviceStatus.ONLINE, 1.5, "ping")

        agent.probe = probe
        reports = await agent.check_status_once()

        assert sorted(probed) == ["10.0.0.1", "10.0.0.2"]
        assert [r.device_id for r in reports] == ["dev-1"]
        assert agent.devices.get("10.0.0.255").status == DeviceStatus.OFFLINE
        assert agent.devices.get("10.0.0.2").status == DeviceStatus.ONLINE
        client.upload_status_reports.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_probe_error_counts_as_offline(self, agent, client):
        agent.devices.merge_discovered([DiscoveredDevice(ip_address="10.0.0.1")])
        agent.probe = AsyncMock(side_effect=OSError("no route"))

        await agent.check_status_once()

        assert agent.devices.get("10.0.0.1").status == DeviceStatus.OFFLINE
        client.upload_status_reports.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_devices(self, agent, client):
        assert await agent.check_status_once() == []
        client.get_devices_to_monitor.assert_not_called()


class TestRemoteMonitoring:
    """Tests for one remote-monitor pass."""

    @pytest.mark.asyncio
    async def test_idle_without_remote_segments(self, agent, client):
        agent.apply_segments([segment()])
        assert await agent.check_remote_once() == agent.remote_idle_poll
        client.get_devices_to_monitor.assert_not_called()

    @pytest.mark.asyncio
    async def test_runs_checks_for_remote_devices(self, agent, client):
        agent.apply_segments([segment("remote", segment_type=SegmentType.REMOTE_MONITOR)])
        client.get_devices_to_monitor.return_value = [
            DeviceToMonitor(id="d1", hostname="example.com", network_segment_id="remote"),
            DeviceToMonitor(id="d2", hostname="other.com", network_segment_id="remote",
                            is_monitored=False),
            DeviceToMonitor(id="d3", hostname="lan.local", network_segment_id="seg-x"),
        ]

        with patch("velocitypulse_agent.monitor.scheduler.run_check",
                   AsyncMock(return_value=CheckResult(DeviceStatus.ONLINE, 20.0))) as mock_check:
            delay = await agent.check_remote_once()

        assert delay == agent.remote_tick
        assert mock_check.await_count == 1
        [reports] = client.upload_status_reports.await_args.args
        assert [r.device_id for r in reports] == ["d1"]

    @pytest.mark.asyncio
    async def test_fetch_failure_backs_off(self, agent, client):
        agent.apply_segments([segment("remote", segment_type=SegmentType.REMOTE_MONITOR)])
        client.get_devices_to_monitor.return_value = None
        assert await agent.check_remote_once() == agent.remote_idle_poll


class TestLifecycle:
    """Tests for run/shutdown and exit codes."""

    @pytest.mark.asyncio
    async def test_restart_request_exit_code(self, agent, client):
        asyncio.get_running_loop().call_later(
            0.05, lambda: asyncio.ensure_future(agent.request_shutdown(EXIT_RESTART))
        )

        exit_code = await asyncio.wait_for(agent.run(), timeout=5)

        assert exit_code == EXIT_RESTART
        agent.discovery.initialize.assert_awaited_once()
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_crashed_loop_is_fatal(self, agent):
        agent.scan_due_segments = AsyncMock(side_effect=RuntimeError("corrupt state"))

        exit_code = await asyncio.wait_for(agent.run(), timeout=5)

        assert exit_code == EXIT_FATAL

    @pytest.mark.asyncio
    async def test_ui_scan_command(self, agent):
        agent.apply_segments([segment()])
        await agent.handle_ui_command("scan_now", {})
        agent.discovery.discover_devices.assert_awaited_once()


class TestRemoteSegmentScenario:
    """Remote /30 segment from ping sweep through enrichment to status upload."""

    @pytest.mark.asyncio
    async def test_sweep_enrich_and_suppressed_failure(self, agent_config, client):
        agent_config.status_failure_threshold = 2

        async def fake_ping(ip, *args, **kwargs):
            if ip == "10.0.0.1":
                return CheckResult(DeviceStatus.ONLINE, 2.0)
            return CheckResult(DeviceStatus.OFFLINE)

        observations = iter([DeviceStatus.ONLINE, DeviceStatus.OFFLINE])

        async def probe(ip):
            return ProbeResult(next(observations), None, "ping")

        discovery = DeviceDiscovery(enrichment=EnrichmentOptions(snmp=False), settle_delay=0)
        agent = VelocityPulseAgent(agent_config, client=client, discovery=discovery,
                                   probe=probe, clock=FakeClock())
        agent.apply_segments([segment("lab", cidr="10.0.0.0/30")])
        client.get_devices_to_monitor.return_value = [
            DeviceToMonitor(id="dev-1", ip_address="10.0.0.1"),
        ]

        with patch("velocitypulse_agent.scanner.discover.is_local_network", return_value=False), \
             patch("velocitypulse_agent.scanner.ping_sweep.ping_host", side_effect=fake_ping), \
             patch("velocitypulse_agent.scanner.discover.scan_ports", AsyncMock(return_value=[22])), \
             patch("velocitypulse_agent.scanner.discover.grab_banners", AsyncMock(return_value=[])), \
             patch("velocitypulse_agent.scanner.os_detect.get_ttl", AsyncMock(return_value=None)):
            await agent.scan_segment_by_id("lab")

        segment_id, uploaded = client.upload_discovered_devices.await_args.args
        assert segment_id == "lab"
        assert [d.ip_address for d in uploaded] == ["10.0.0.1"]
        assert uploaded[0].open_ports == {22}
        assert "Linux/Unix" in uploaded[0].os_hints
        assert uploaded[0].mac_address is None

        await agent.check_status_once()
        await agent.check_status_once()

        [reports] = client.upload_status_reports.await_args.args
        assert len(reports) == 1
        assert reports[0].ip_address == "10.0.0.1"
        assert reports[0].status == DeviceStatus.ONLINE
        assert agent.hysteresis.failure_counts["10.0.0.1"] == 1
