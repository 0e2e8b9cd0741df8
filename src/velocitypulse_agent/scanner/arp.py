"""
ARP table discovery.

Reads the local ARP cache to find hosts on a directly attached segment.
Fast, and the only source that yields MAC addresses, but limited to hosts
that have communicated recently (the broadcast ping beforehand helps).
"""

from __future__ import annotations

import logging
import re
import shutil
import sys
from functools import partial
from typing import Callable, Optional

from netaddr import EUI, AddrFormatError, NotRegisteredError

from .._types import DiscoveredDevice, DiscoverySource
from ..utils.ip_utils import is_in_cidr, normalize_mac
from ..utils.process import run_command
from .base import DiscoveryMethod

logger = logging.getLogger(__name__)

# Linux: ? (192.168.1.1) at aa:bb:cc:dd:ee:ff [ether] on eth0
# macOS: ? (192.168.1.1) at aa:bb:cc:dd:ee:ff on en0 ifscope [ethernet]
UNIX_ARP_LINE = re.compile(
    r"(?:(\S+)\s+)?\((\d+\.\d+\.\d+\.\d+)\)\s+at\s+([0-9a-fA-F:]+)"
)

# Windows:   192.168.1.1          aa-bb-cc-dd-ee-ff     dynamic
WINDOWS_ARP_LINE = re.compile(r"(\d+\.\d+\.\d+\.\d+)\s+([0-9a-fA-F-]{17})")

# iproute2: 192.168.1.1 dev eth0 lladdr aa:bb:cc:dd:ee:ff REACHABLE
IP_NEIGH_LINE = re.compile(
    r"^(\d+\.\d+\.\d+\.\d+)\s+dev\s+\S+\s+lladdr\s+([0-9a-fA-F:]+)"
)

LineParser = Callable[[str], Optional[tuple[str, str]]]

# Short names for common OUIs, plus locally administered prefixes the IEEE
# registry does not list. Everything else comes from netaddr.
OUI_MAP = {
    "00:50:56": "VMware",
    "00:0c:29": "VMware",
    "00:1c:42": "Parallels",
    "08:00:27": "VirtualBox",
    "52:54:00": "QEMU/KVM",
    "00:15:5d": "Microsoft Hyper-V",
    "d4:be:d9": "Dell",
    "f8:bc:12": "Dell",
    "00:1e:67": "HP",
    "3c:d9:2b": "HP",
    "00:1a:a0": "Lenovo",
    "78:dd:12": "Lenovo",
    "f0:9f:c2": "Apple",
    "3c:22:fb": "Apple",
    "a4:83:e7": "Apple",
    "00:1b:63": "Cisco",
    "00:26:cb": "Cisco",
    "b8:27:eb": "Raspberry Pi Foundation",
    "dc:a6:32": "Raspberry Pi Trading",
    "00:11:32": "Synology",
    "24:5a:4c": "Ubiquiti",
    "fc:ec:da": "Ubiquiti",
    "00:17:88": "Philips Hue",
    "18:b4:30": "Nest Labs",
    "44:65:0d": "Amazon",
    "f4:f5:d8": "Google",
    "00:00:5e": "IANA (VRRP)",
}


def lookup_oui(mac_address: str) -> Optional[str]:
    """Look up a manufacturer from the MAC OUI."""
    mac = normalize_mac(mac_address)
    if mac[:8] in OUI_MAP:
        return OUI_MAP[mac[:8]]
    try:
        return EUI(mac).oui.registration().org.strip() or None
    except (AddrFormatError, NotRegisteredError):
        return None


def parse_arp_line(line: str, windows: bool = False) -> Optional[tuple[str, str]]:
    """Return (ip, mac) for a complete ARP entry, else None."""
    if windows:
        match = WINDOWS_ARP_LINE.search(line)
        if not match:
            return None
        ip_address, mac = match.group(1), match.group(2)
    else:
        if "incomplete" in line:
            return None
        match = UNIX_ARP_LINE.search(line)
        if not match:
            return None
        ip_address, mac = match.group(2), match.group(3)

    return _usable(ip_address, mac)


def parse_ip_neigh_line(line: str) -> Optional[tuple[str, str]]:
    """Return (ip, mac) for an `ip neigh` entry that has a link-layer address."""
    if "FAILED" in line or "INCOMPLETE" in line:
        return None
    match = IP_NEIGH_LINE.search(line.strip())
    if not match:
        return None
    return _usable(match.group(1), match.group(2))


def _usable(ip_address: str, mac: str) -> Optional[tuple[str, str]]:
    mac = normalize_mac(mac)
    if mac in ("ff:ff:ff:ff:ff:ff", "00:00:00:00:00:00"):
        return None
    return ip_address, mac


def neighbor_command() -> Optional[tuple[list[str], LineParser]]:
    """
    Pick the neighbor table reader available on this host.

    `arp` is preferred; Linux hosts without net-tools fall back to
    iproute2's `ip neigh show`.
    """
    if sys.platform == "win32":
        if shutil.which("arp") is None:
            return None
        return ["arp", "-a"], partial(parse_arp_line, windows=True)
    if shutil.which("arp") is not None:
        return ["arp", "-an"], parse_arp_line
    if shutil.which("ip") is not None:
        return ["ip", "neigh", "show"], parse_ip_neigh_line
    return None


class ARPDiscovery(DiscoveryMethod):
    """
    Discover devices from the ARP cache.

    Entries outside the requested CIDR are dropped.
    """

    @property
    def name(self) -> str:
        return "arp"

    async def is_available(self) -> bool:
        return neighbor_command() is not None

    async def discover(self, cidr: str) -> list[DiscoveredDevice]:
        reader = neighbor_command()
        if reader is None:
            logger.warning("No ARP table reader (arp or ip) found")
            return []
        cmd, parse_line = reader

        rc, stdout, stderr = await run_command(cmd, timeout=10)
        if rc != 0:
            logger.error(f"ARP command failed: {stderr.strip()}")
            return []

        devices = []
        for line in stdout.splitlines():
            entry = parse_line(line)
            if entry is None:
                continue

            ip_address, mac = entry
            if not is_in_cidr(ip_address, cidr):
                continue

            devices.append(DiscoveredDevice(
                ip_address=ip_address,
                mac_address=mac,
                manufacturer=lookup_oui(mac),
                discovery_method=DiscoverySource.ARP,
            ))

        logger.debug(f"ARP scan found {len(devices)} devices in {cidr}")
        return devices
