"""
mDNS / DNS-SD discovery using zeroconf.

Browses a fixed set of common service types for a listen window and
resolves each announced instance to its IPv4 address, host name and port.
Multicast answers can come from any attached subnet; the caller filters
results to the segment CIDR.
"""

from __future__ import annotations

import asyncio
import logging

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .._types import DiscoveredDevice, DiscoverySource
from .base import DiscoveryMethod

logger = logging.getLogger(__name__)

MDNS_SERVICE_TYPES = [
    "_http._tcp.local.",
    "_https._tcp.local.",
    "_printer._tcp.local.",
    "_ipp._tcp.local.",
    "_ssh._tcp.local.",
    "_smb._tcp.local.",
    "_googlecast._tcp.local.",
    "_airplay._tcp.local.",
    "_raop._tcp.local.",
    "_workstation._tcp.local.",
]

RESOLVE_TIMEOUT_MS = 3000


def service_label(service_type: str) -> str:
    """_ipp._tcp.local. -> ipp"""
    return service_type.split(".", 1)[0].lstrip("_")


def strip_local(hostname: str) -> str:
    """printer.local. -> printer"""
    hostname = hostname.rstrip(".")
    if hostname.endswith(".local"):
        hostname = hostname[: -len(".local")]
    return hostname


def add_service_info(
    devices: dict[str, DiscoveredDevice],
    service_type: str,
    addresses: list[str],
    server: str | None,
    port: int | None,
) -> None:
    """Fold one resolved service instance into the per-IP device map."""
    hostname = strip_local(server) if server else None
    label = service_label(service_type)

    for ip in addresses:
        device = devices.get(ip)
        if device is None:
            device = DiscoveredDevice(ip_address=ip, discovery_method=DiscoverySource.MDNS)
            devices[ip] = device
        if hostname and not device.hostname:
            device.hostname = hostname
        device.services.add(label)
        if port:
            device.open_ports.add(port)


class MDNSDiscovery(DiscoveryMethod):
    """Discover devices that advertise services over multicast DNS."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "mdns"

    async def is_available(self) -> bool:
        """Multicast sockets can be opened on this host."""
        try:
            zc = Zeroconf()
        except OSError as e:
            logger.warning(f"mDNS unavailable (multicast not supported): {e}")
            return False
        zc.close()
        return True

    async def discover(self, cidr: str) -> list[DiscoveredDevice]:
        devices: dict[str, DiscoveredDevice] = {}
        pending: set[asyncio.Task] = set()

        try:
            aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        except OSError as e:
            logger.warning(f"mDNS scan failed (multicast may not be supported): {e}")
            return []

        async def resolve(service_type: str, name: str) -> None:
            info = AsyncServiceInfo(service_type, name)
            try:
                if not await info.async_request(aiozc.zeroconf, RESOLVE_TIMEOUT_MS):
                    return
            except Exception as e:
                logger.debug(f"mDNS resolve failed for {name}: {e}")
                return
            add_service_info(
                devices,
                service_type,
                info.parsed_addresses(IPVersion.V4Only),
                info.server,
                info.port,
            )

        def on_service_state_change(
            zeroconf: Zeroconf,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change is ServiceStateChange.Removed:
                return
            task = asyncio.ensure_future(resolve(service_type, name))
            pending.add(task)
            task.add_done_callback(pending.discard)

        browser = AsyncServiceBrowser(
            aiozc.zeroconf, MDNS_SERVICE_TYPES, handlers=[on_service_state_change]
        )
        try:
            await asyncio.sleep(self.timeout)
            if pending:
                # Resolutions still in flight at the end of the window are dropped.
                _, late = await asyncio.wait(set(pending), timeout=1.0)
                for task in late:
                    task.cancel()
        finally:
            await browser.async_cancel()
            await aiozc.async_close()

        result = list(devices.values())
        logger.info(f"mDNS scan found {len(result)} devices")
        return result
