"""
Tests for discovery orchestration, merging and enrichment.
"""

import pytest
from unittest.mock import AsyncMock, patch

from velocitypulse_agent._types import DeviceType, DiscoveredDevice, DiscoverySource
from velocitypulse_agent.scanner import discover as discover_module
from velocitypulse_agent.scanner.base import DiscoveryMethod, UnavailableDiscovery
from velocitypulse_agent.scanner.discover import (
    DeviceDiscovery,
    EnrichmentOptions,
    enrich_devices,
    merge_devices,
)
from velocitypulse_agent.scanner.os_detect import OSDetection

DISCOVER = "velocitypulse_agent.scanner.discover"


class FakeSource(DiscoveryMethod):
    """Discovery source returning canned devices."""

    def __init__(self, name, devices=None, available=True, error=None):
        self._name = name
        self.devices = devices or []
        self.available = available
        self.error = error
        self.calls = []

    @property
    def name(self):
        return self._name

    async def discover(self, cidr):
        self.calls.append(cidr)
        if self.error:
            raise self.error
        return list(self.devices)

    async def is_available(self):
        return self.available


class TestMergeDevices:
    """Tests for merging per-source device records."""

    def test_first_scalar_wins_and_sets_union(self):
        arp = DiscoveredDevice(
            ip_address="192.168.1.10",
            mac_address="AA:BB:CC:DD:EE:FF",
            manufacturer="Apple",
            services={"ssh"},
        )
        mdns = DiscoveredDevice(
            ip_address="192.168.1.10",
            hostname="macbook",
            manufacturer="Other",
            services={"airplay"},
            open_ports={7000},
            discovery_method=DiscoverySource.MDNS,
        )

        merged = merge_devices([arp], [mdns])

        assert len(merged) == 1
        device = merged[0]
        assert device.mac_address == "AA:BB:CC:DD:EE:FF"
        assert device.hostname == "macbook"
        assert device.manufacturer == "Apple"
        assert device.services == {"ssh", "airplay"}
        assert device.open_ports == {7000}
        assert device.discovery_method == DiscoverySource.ARP

    def test_inputs_not_mutated(self):
        first = DiscoveredDevice(ip_address="10.0.0.1", services={"ssh"})
        second = DiscoveredDevice(ip_address="10.0.0.1", services={"http"})

        merge_devices([first], [second])

        assert first.services == {"ssh"}
        assert second.services == {"http"}

    def test_device_type_only_fills_unknown(self):
        a = DiscoveredDevice(ip_address="10.0.0.1")
        b = DiscoveredDevice(ip_address="10.0.0.1", device_type=DeviceType.PRINTER)
        c = DiscoveredDevice(ip_address="10.0.0.1", device_type=DeviceType.SERVER)

        merged = merge_devices([a], [b], [c])
        assert merged[0].device_type == DeviceType.PRINTER

    def test_order_insensitive_for_complementary_sources(self):
        a = DiscoveredDevice(ip_address="10.0.0.1", mac_address="AA:BB:CC:00:00:01", open_ports={22})
        b = DiscoveredDevice(ip_address="10.0.0.1", hostname="nas", services={"smb"})

        ab = merge_devices([a, b])
        ba = merge_devices([b, a])

        for field in ("mac_address", "hostname", "open_ports", "services"):
            assert getattr(ab[0], field) == getattr(ba[0], field)

    def test_conflicts_resolved_by_list_order(self):
        """Test the earlier list wins a scalar conflict."""
        mdns = DiscoveredDevice(ip_address="10.0.0.1", hostname="nas.local")
        ssdp = DiscoveredDevice(ip_address="10.0.0.1", hostname="Synology DS920+")

        assert merge_devices([mdns], [ssdp])[0].hostname == "nas.local"
        assert merge_devices([ssdp], [mdns])[0].hostname == "Synology DS920+"

    def test_idempotent(self):
        a = DiscoveredDevice(ip_address="10.0.0.1", hostname="nas", services={"smb"})
        once = merge_devices([a])
        twice = merge_devices([a], [a])
        assert once == twice

    def test_distinct_ips_kept(self):
        merged = merge_devices(
            [DiscoveredDevice(ip_address="10.0.0.1")],
            [DiscoveredDevice(ip_address="10.0.0.2")],
        )
        assert {d.ip_address for d in merged} == {"10.0.0.1", "10.0.0.2"}


class TestEnrichDevices:
    """Tests for batched enrichment."""

    @pytest.mark.asyncio
    async def test_failure_isolated(self):
        """Test one failing device does not block the rest of its batch."""
        devices = [DiscoveredDevice(ip_address=f"10.0.0.{i}") for i in range(1, 8)]

        async def fake_enrich(device, options):
            if device.ip_address == "10.0.0.3":
                raise RuntimeError("probe failed")
            device.open_ports.add(22)

        with patch(f"{DISCOVER}.enrich_device", side_effect=fake_enrich) as mock_enrich:
            result = await enrich_devices(devices)

        assert result is devices
        assert mock_enrich.call_count == 7
        assert devices[2].open_ports == set()
        assert all(d.open_ports == {22} for d in devices if d.ip_address != "10.0.0.3")

    @pytest.mark.asyncio
    async def test_empty_list(self):
        with patch(f"{DISCOVER}.enrich_device") as mock_enrich:
            assert await enrich_devices([]) == []
        mock_enrich.assert_not_called()

    @pytest.mark.asyncio
    async def test_enrich_device_applies_results(self):
        """Test ports, services and OS detection land on the device."""
        device = DiscoveredDevice(ip_address="10.0.0.1")

        with patch(f"{DISCOVER}.scan_ports", AsyncMock(return_value=[22])), \
             patch(f"{DISCOVER}.grab_banners", AsyncMock(return_value=[])), \
             patch(f"{DISCOVER}.detect_os", AsyncMock(return_value=OSDetection(
                 os_hints=["Linux/Unix"], device_type=DeviceType.SERVER))):
            await discover_module.enrich_device(device, EnrichmentOptions(snmp=False))

        assert device.open_ports == {22}
        assert "ssh" in device.services
        assert device.os_hints == {"Linux/Unix"}
        assert device.device_type == DeviceType.SERVER

    @pytest.mark.asyncio
    async def test_snmp_name_only_fills_missing_hostname(self):
        named = DiscoveredDevice(ip_address="10.0.0.1", hostname="nas")
        unnamed = DiscoveredDevice(ip_address="10.0.0.2")
        snmp = {"sysName": "switch-core", "sysDescr": "Cisco IOS"}

        with patch(f"{DISCOVER}.detect_os", AsyncMock(return_value=OSDetection())), \
             patch(f"{DISCOVER}.query_snmp", AsyncMock(return_value=snmp)):
            for device in (named, unnamed):
                await discover_module.enrich_device(device, EnrichmentOptions(port_scan=False))

        assert named.hostname == "nas"
        assert unnamed.hostname == "switch-core"
        assert named.snmp_info == snmp


class TestDeviceDiscovery:
    """Tests for local/remote strategy selection."""

    def _discovery(self, **sources):
        defaults = {
            "arp": FakeSource("ARP"),
            "mdns": FakeSource("mDNS"),
            "ssdp": FakeSource("SSDP"),
        }
        defaults.update(sources)
        return DeviceDiscovery(sources=defaults, settle_delay=0)

    @pytest.mark.asyncio
    async def test_initialize_replaces_unavailable(self):
        discovery = self._discovery(mdns=FakeSource("mDNS", available=False))
        await discovery.initialize()

        assert isinstance(discovery.sources["mdns"], UnavailableDiscovery)
        assert isinstance(discovery.sources["arp"], FakeSource)

    @pytest.mark.asyncio
    async def test_local_filters_multicast_to_cidr(self):
        arp = FakeSource("ARP", [DiscoveredDevice(ip_address="192.168.1.10")])
        mdns = FakeSource("mDNS", [
            DiscoveredDevice(ip_address="192.168.1.10", hostname="nas",
                             discovery_method=DiscoverySource.MDNS),
            DiscoveredDevice(ip_address="10.9.9.9", discovery_method=DiscoverySource.MDNS),
        ])
        ssdp = FakeSource("SSDP", [
            DiscoveredDevice(ip_address="172.16.0.5", discovery_method=DiscoverySource.SSDP),
        ])
        discovery = self._discovery(arp=arp, mdns=mdns, ssdp=ssdp)

        with patch(f"{DISCOVER}.ping_broadcast", AsyncMock()) as mock_broadcast:
            devices = await discovery.discover_local("192.168.1.0/24")

        mock_broadcast.assert_awaited_once_with("192.168.1.0/24")
        assert [d.ip_address for d in devices] == ["192.168.1.10"]
        assert devices[0].hostname == "nas"

    @pytest.mark.asyncio
    async def test_local_conflicts_follow_source_priority(self):
        """Test ARP wins the MAC and mDNS wins the hostname when sources disagree."""
        arp = FakeSource("ARP", [
            DiscoveredDevice(ip_address="192.168.1.10", mac_address="aa:bb:cc:dd:ee:01"),
        ])
        mdns = FakeSource("mDNS", [
            DiscoveredDevice(ip_address="192.168.1.10", hostname="office-printer",
                             discovery_method=DiscoverySource.MDNS),
        ])
        ssdp = FakeSource("SSDP", [
            DiscoveredDevice(ip_address="192.168.1.10", hostname="HP LaserJet M404",
                             mac_address="aa:bb:cc:dd:ee:99", manufacturer="HP",
                             discovery_method=DiscoverySource.SSDP),
        ])
        discovery = self._discovery(arp=arp, mdns=mdns, ssdp=ssdp)

        with patch(f"{DISCOVER}.ping_broadcast", AsyncMock()):
            [device] = await discovery.discover_local("192.168.1.0/24")

        assert discover_module.LOCAL_SOURCE_PRIORITY == ("arp", "mdns", "ssdp")
        assert device.mac_address == "aa:bb:cc:dd:ee:01"
        assert device.hostname == "office-printer"
        assert device.manufacturer == "HP"

    @pytest.mark.asyncio
    async def test_local_source_error_isolated(self):
        arp = FakeSource("ARP", [DiscoveredDevice(ip_address="192.168.1.10")])
        mdns = FakeSource("mDNS", error=RuntimeError("socket closed"))
        discovery = self._discovery(arp=arp, mdns=mdns)

        with patch(f"{DISCOVER}.ping_broadcast", AsyncMock()):
            devices = await discovery.discover_local("192.168.1.0/24")

        assert [d.ip_address for d in devices] == ["192.168.1.10"]

    @pytest.mark.asyncio
    async def test_remote_uses_ping_sweep(self):
        arp = FakeSource("ARP")
        discovery = self._discovery(arp=arp)
        swept = [DiscoveredDevice(ip_address="10.0.0.1")]

        with patch(f"{DISCOVER}.is_local_network", return_value=False), \
             patch(f"{DISCOVER}.ping_sweep", AsyncMock(return_value=swept)) as mock_sweep, \
             patch(f"{DISCOVER}.enrich_devices", AsyncMock(side_effect=lambda d, o: d)):
            devices = await discovery.discover_devices("10.0.0.0/30")

        mock_sweep.assert_awaited_once_with("10.0.0.0/30", concurrency=50)
        assert devices == swept
        assert arp.calls == []

    @pytest.mark.asyncio
    async def test_local_path_selected(self):
        arp = FakeSource("ARP", [DiscoveredDevice(ip_address="192.168.1.10")])
        discovery = self._discovery(arp=arp)

        with patch(f"{DISCOVER}.is_local_network", return_value=True), \
             patch(f"{DISCOVER}.ping_broadcast", AsyncMock()), \
             patch(f"{DISCOVER}.ping_sweep", AsyncMock()) as mock_sweep, \
             patch(f"{DISCOVER}.enrich_devices", AsyncMock(side_effect=lambda d, o: d)):
            devices = await discovery.discover_devices("192.168.1.0/24")

        mock_sweep.assert_not_awaited()
        assert arp.calls == ["192.168.1.0/24"]
        assert len(devices) == 1
