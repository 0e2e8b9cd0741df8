"""
Discovery orchestration, merge and enrichment.

Local segments:  broadcast ping -> settle -> ARP + mDNS + SSDP in parallel
                 -> CIDR filter on multicast results -> merge
Remote segments: ping sweep
Both:            batched enrichment (ports, banners, OS, SNMP)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from .._types import DeviceType, DiscoveredDevice
from ..utils.ip_utils import is_in_cidr, is_local_network
from .arp import ARPDiscovery
from .banner import grab_banners
from .base import DiscoveryMethod, UnavailableDiscovery
from .mdns import MDNSDiscovery
from .os_detect import detect_os
from .ping import ping_broadcast
from .ping_sweep import PING_SWEEP_CONCURRENCY, ping_sweep
from .port_scan import scan_ports, services_for_ports
from .snmp import query_snmp
from .ssdp import SSDPDiscovery

logger = logging.getLogger(__name__)

ARP_SETTLE_DELAY = 2.0
ENRICH_BATCH_SIZE = 5

# Merge priority for local discovery: earlier sources win scalar conflicts.
# ARP owns MAC addresses, mDNS names beat UPnP friendly names. SNMP sysName
# is applied later, during enrichment, and only fills an empty hostname.
LOCAL_SOURCE_PRIORITY = ("arp", "mdns", "ssdp")

_SCALAR_FIELDS = ("mac_address", "hostname", "manufacturer", "upnp_info", "snmp_info")


def _copy(device: DiscoveredDevice) -> DiscoveredDevice:
    return replace(
        device,
        os_hints=set(device.os_hints),
        open_ports=set(device.open_ports),
        services=set(device.services),
    )


def merge_devices(*device_lists: Iterable[DiscoveredDevice]) -> list[DiscoveredDevice]:
    """
    Merge device records from several sources into one record per IP.

    device_lists are given in priority order: scalar fields keep the first
    non-empty value seen, so the earlier source wins a conflict. Set fields
    are unioned. Inputs are not modified.
    """
    merged: dict[str, DiscoveredDevice] = {}

    for devices in device_lists:
        for device in devices:
            existing = merged.get(device.ip_address)
            if existing is None:
                merged[device.ip_address] = _copy(device)
                continue

            for name in _SCALAR_FIELDS:
                value = getattr(device, name)
                if value and not getattr(existing, name):
                    setattr(existing, name, value)

            if existing.device_type == DeviceType.UNKNOWN:
                existing.device_type = device.device_type

            existing.os_hints |= device.os_hints
            existing.open_ports |= device.open_ports
            existing.services |= device.services

    return list(merged.values())


@dataclass
class EnrichmentOptions:
    port_scan: bool = True
    snmp: bool = True


async def enrich_device(device: DiscoveredDevice, options: EnrichmentOptions) -> None:
    """Add ports, services, OS hints and SNMP info to one device in place."""
    ip = device.ip_address

    if options.port_scan:
        open_ports = await scan_ports(ip)
        if open_ports:
            device.open_ports.update(open_ports)
            banners = await grab_banners(ip, open_ports)
            device.services |= services_for_ports(open_ports)
            device.services |= {b.service for b in banners if b.service}

    detection = await detect_os(ip, device.open_ports, device.services)
    device.os_hints.update(detection.os_hints)
    if detection.device_type != DeviceType.UNKNOWN:
        device.device_type = detection.device_type

    if options.snmp:
        snmp_info = await query_snmp(ip)
        if snmp_info:
            device.snmp_info = snmp_info
            if not device.hostname and snmp_info.get("sysName"):
                device.hostname = snmp_info["sysName"]


async def enrich_devices(
    devices: list[DiscoveredDevice],
    options: Optional[EnrichmentOptions] = None,
) -> list[DiscoveredDevice]:
    """
    Enrich devices in sequential batches of five.

    A failure on one device leaves that device unenriched and does not
    affect the rest of its batch.
    """
    if not devices:
        return devices

    options = options or EnrichmentOptions()
    logger.info(
        f"Enriching {len(devices)} devices (ports={options.port_scan}, snmp={options.snmp})"
    )

    async def guarded(device: DiscoveredDevice) -> None:
        try:
            await enrich_device(device, options)
        except Exception as e:
            logger.debug(f"Enrichment error for {device.ip_address}: {e}")

    for start in range(0, len(devices), ENRICH_BATCH_SIZE):
        batch = devices[start:start + ENRICH_BATCH_SIZE]
        await asyncio.gather(*(guarded(device) for device in batch))

    logger.info(f"Enrichment complete for {len(devices)} devices")
    return devices


class DeviceDiscovery:
    """
    Chooses a discovery strategy per segment and runs it.

    Source availability is checked once by initialize(); sources that fail
    it are replaced with no-op stand-ins for the life of the agent.
    """

    def __init__(
        self,
        sources: Optional[dict[str, DiscoveryMethod]] = None,
        enrichment: Optional[EnrichmentOptions] = None,
        ping_concurrency: int = PING_SWEEP_CONCURRENCY,
        settle_delay: float = ARP_SETTLE_DELAY,
    ):
        self.sources = sources or {
            "arp": ARPDiscovery(),
            "mdns": MDNSDiscovery(),
            "ssdp": SSDPDiscovery(),
        }
        self.enrichment = enrichment or EnrichmentOptions()
        self.ping_concurrency = ping_concurrency
        self.settle_delay = settle_delay

    async def initialize(self) -> None:
        for key, source in list(self.sources.items()):
            try:
                available = await source.is_available()
            except Exception as e:
                logger.warning(f"Availability check failed for {source.name}: {e}")
                available = False
            if not available:
                logger.warning(f"Discovery source {source.name} unavailable, skipping it")
                self.sources[key] = UnavailableDiscovery(source.name)

    async def _run_source(self, source: DiscoveryMethod, cidr: str) -> list[DiscoveredDevice]:
        try:
            return await source.discover(cidr)
        except Exception as e:
            logger.error(f"{source.name} discovery failed: {e}")
            return []

    async def discover_local(self, cidr: str) -> list[DiscoveredDevice]:
        await ping_broadcast(cidr)
        await asyncio.sleep(self.settle_delay)

        results = await asyncio.gather(
            *(self._run_source(self.sources[key], cidr) for key in LOCAL_SOURCE_PRIORITY)
        )
        found = dict(zip(LOCAL_SOURCE_PRIORITY, results))
        logger.info(
            f"Discovery results - ARP: {len(found['arp'])}, "
            f"mDNS: {len(found['mdns'])}, SSDP: {len(found['ssdp'])}"
        )

        # Multicast replies can come from hosts outside the segment.
        for key in ("mdns", "ssdp"):
            found[key] = [d for d in found[key] if is_in_cidr(d.ip_address, cidr)]

        return merge_devices(*(found[key] for key in LOCAL_SOURCE_PRIORITY))

    async def discover_remote(self, cidr: str) -> list[DiscoveredDevice]:
        return await ping_sweep(cidr, concurrency=self.ping_concurrency)

    async def discover_devices(self, cidr: str) -> list[DiscoveredDevice]:
        """Discover and enrich every device on a segment."""
        if is_local_network(cidr):
            logger.info(f"Segment {cidr} is LOCAL - using ARP + mDNS + SSDP discovery")
            devices = await self.discover_local(cidr)
        else:
            logger.info(f"Segment {cidr} is REMOTE - using ping sweep")
            devices = await self.discover_remote(cidr)

        return await enrich_devices(devices, self.enrichment)


async def discover_devices(cidr: str) -> list[DiscoveredDevice]:
    """One-shot discovery with default sources (no availability pre-check)."""
    return await DeviceDiscovery().discover_devices(cidr)
