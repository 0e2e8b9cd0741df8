"""
IPv4 / CIDR helpers.

is_local_network() decides whether a segment is directly attached (layer-2
reachable, so ARP/mDNS/SSDP work) or must be swept with ping.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Iterable, Optional

import psutil

logger = logging.getLogger(__name__)


def parse_network(cidr: str) -> ipaddress.IPv4Network:
    """Parse a CIDR, tolerating host bits (192.168.1.10/24)."""
    try:
        return ipaddress.IPv4Network(cidr.strip(), strict=False)
    except ValueError as e:
        raise ValueError(f"Invalid CIDR: {cidr}") from e


def expand_cidr(cidr: str) -> list[str]:
    """
    Expand a CIDR to its usable host addresses.

    Network and broadcast addresses are excluded for prefixes up to /30;
    /31 and /32 keep every address.
    """
    network = parse_network(cidr)
    if network.prefixlen >= 31:
        return [str(ip) for ip in network]
    return [str(ip) for ip in network.hosts()]


def is_in_cidr(ip: str, cidr: str) -> bool:
    """Check if an IP address falls within a CIDR range."""
    try:
        return ipaddress.IPv4Address(ip) in parse_network(cidr)
    except ValueError:
        return False


def get_interface_addresses() -> list[tuple[str, str]]:
    """Return (address, netmask) for every IPv4 address on this host."""
    pairs = []
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family == socket.AF_INET and addr.netmask:
                pairs.append((addr.address, addr.netmask))
    return pairs


def is_local_network(
    cidr: str,
    interfaces: Optional[Iterable[tuple[str, str]]] = None,
) -> bool:
    """
    Check whether a CIDR overlaps a directly attached interface network.

    Local if either network contains the other, so a segment coarser or
    finer than the interface's own subnet still counts.
    """
    target = parse_network(cidr)
    if interfaces is None:
        interfaces = get_interface_addresses()

    for address, netmask in interfaces:
        try:
            local = ipaddress.IPv4Network(f"{address}/{netmask}", strict=False)
        except ValueError:
            logger.debug(f"Skipping interface with bad address {address}/{netmask}")
            continue

        if target.subnet_of(local) or local.subnet_of(target):
            return True

    return False


def normalize_mac(mac: str) -> str:
    """Normalize a MAC address to lower-case colon form (aa:bb:cc:dd:ee:ff)."""
    cleaned = mac.replace(":", "").replace("-", "").replace(".", "").lower()
    if len(cleaned) != 12:
        return mac
    return ":".join(cleaned[i:i + 2] for i in range(0, 12, 2))
