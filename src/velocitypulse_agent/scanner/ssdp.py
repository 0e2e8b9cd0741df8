"""
SSDP / UPnP discovery.

Sends one M-SEARCH for ssdp:all, collects unicast responses for a listen
window, then fetches each responder's UPnP description document for its
friendly name, manufacturer and device type.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import xml.etree.ElementTree as ET
from typing import Optional

import aiohttp

from .._types import DiscoveredDevice, DiscoverySource
from .base import DiscoveryMethod

logger = logging.getLogger(__name__)

SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900

M_SEARCH = (
    "M-SEARCH * HTTP/1.1\r\n"
    f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
    'MAN: "ssdp:discover"\r\n'
    "MX: 3\r\n"
    "ST: ssdp:all\r\n"
    "\r\n"
).encode()

UPNP_FETCH_TIMEOUT = 3.0

UPNP_FIELDS = ("friendlyName", "manufacturer", "modelName", "deviceType")


def parse_ssdp_response(data: bytes) -> dict[str, str]:
    """Parse SSDP response headers into an upper-cased header dict."""
    headers = {}
    for line in data.decode("utf-8", errors="ignore").splitlines()[1:]:
        key, sep, value = line.partition(":")
        if sep:
            headers[key.strip().upper()] = value.strip()
    return headers


def parse_upnp_description(xml_text: str) -> dict[str, str]:
    """Extract the first device's descriptive fields from a UPnP description."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return {}

    info = {}
    for element in root.iter():
        # Tags are namespaced: {urn:schemas-upnp-org:device-1-0}friendlyName
        tag = element.tag.rsplit("}", 1)[-1]
        if tag in UPNP_FIELDS and tag not in info and element.text and element.text.strip():
            info[tag] = element.text.strip()
    return info


class _SSDPProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.responses: list[tuple[str, dict[str, str]]] = []

    def datagram_received(self, data: bytes, addr) -> None:
        self.responses.append((addr[0], parse_ssdp_response(data)))

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"SSDP socket error: {exc}")


class SSDPDiscovery(DiscoveryMethod):
    """Discover UPnP devices (routers, TVs, NAS, printers) via SSDP."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "ssdp"

    async def is_available(self) -> bool:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.close()
        except OSError as e:
            logger.warning(f"SSDP unavailable: {e}")
            return False
        return True

    async def discover(self, cidr: str) -> list[DiscoveredDevice]:
        loop = asyncio.get_running_loop()
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.bind(("", 0))
            transport, protocol = await loop.create_datagram_endpoint(
                _SSDPProtocol, sock=sock
            )
        except OSError as e:
            logger.warning(f"SSDP scan failed: {e}")
            return []

        try:
            transport.sendto(M_SEARCH, (SSDP_ADDR, SSDP_PORT))
            await asyncio.sleep(self.timeout)
        finally:
            transport.close()

        devices: dict[str, DiscoveredDevice] = {}
        locations: dict[str, str] = {}

        for ip, headers in protocol.responses:
            device = devices.setdefault(
                ip, DiscoveredDevice(ip_address=ip, discovery_method=DiscoverySource.SSDP)
            )
            server = headers.get("SERVER")
            if server:
                device.os_hints.add(server)
            location = headers.get("LOCATION")
            if location and ip not in locations:
                locations[ip] = location

        if locations:
            await self._fetch_descriptions(devices, locations)

        result = list(devices.values())
        logger.info(f"SSDP scan found {len(result)} devices")
        return result

    async def _fetch_descriptions(
        self,
        devices: dict[str, DiscoveredDevice],
        locations: dict[str, str],
    ) -> None:
        timeout = aiohttp.ClientTimeout(total=UPNP_FETCH_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            infos = await asyncio.gather(
                *(fetch_upnp_description(session, url) for url in locations.values())
            )

        for ip, info in zip(locations, infos):
            if info:
                apply_upnp_info(devices[ip], info)


async def fetch_upnp_description(
    session: aiohttp.ClientSession, url: str
) -> Optional[dict[str, str]]:
    """Best-effort fetch of a UPnP description document."""
    try:
        async with session.get(url) as response:
            if response.status != 200:
                return None
            return parse_upnp_description(await response.text()) or None
    except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
        logger.debug(f"UPnP description fetch failed for {url}: {e}")
        return None


def apply_upnp_info(device: DiscoveredDevice, info: dict[str, str]) -> None:
    device.upnp_info = info
    if not device.hostname and info.get("friendlyName"):
        device.hostname = info["friendlyName"]
    if not device.manufacturer and info.get("manufacturer"):
        device.manufacturer = info["manufacturer"]
