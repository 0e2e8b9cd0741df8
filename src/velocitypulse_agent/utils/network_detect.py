"""
Local network detection used for auto-registering a segment.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

PREFERRED_PREFIXES = ("eth", "en", "wlan", "wi-fi", "ethernet")
VIRTUAL_MARKERS = ("docker", "veth", "br-", "virbr", "vmnet", "vbox", "tun", "tap")


@dataclass
class LocalNetwork:
    """An IPv4 network attached to one of this host's interfaces."""
    interface_name: str
    address: str
    netmask: str
    cidr: str
    mac: Optional[str] = None


def detect_local_networks() -> list[LocalNetwork]:
    """List non-loopback IPv4 networks on this host."""
    networks = []

    for name, addrs in psutil.net_if_addrs().items():
        mac = next((a.address for a in addrs if a.family == psutil.AF_LINK), None)
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if addr.address.startswith("127."):
                continue
            network = ipaddress.IPv4Network(f"{addr.address}/{addr.netmask}", strict=False)
            networks.append(LocalNetwork(
                interface_name=name,
                address=addr.address,
                netmask=addr.netmask,
                cidr=str(network),
                mac=mac,
            ))

    return networks


def get_primary_local_network(
    networks: Optional[list[LocalNetwork]] = None,
) -> Optional[LocalNetwork]:
    """
    Pick the network that looks like the host's main connection.

    Physical ethernet/wifi names win; link-local 169.254.x.x addresses and
    container/VPN adapters are avoided.
    """
    if networks is None:
        networks = detect_local_networks()
    if not networks:
        return None

    candidates = [n for n in networks if not n.address.startswith("169.254.")]
    if not candidates:
        return networks[0]

    for prefix in PREFERRED_PREFIXES:
        for network in candidates:
            if network.interface_name.lower().startswith(prefix):
                return network

    physical = [
        n for n in candidates
        if not any(marker in n.interface_name.lower() for marker in VIRTUAL_MARKERS)
    ]
    return physical[0] if physical else candidates[0]


def auto_segment_name(network: LocalNetwork) -> str:
    return f"Auto: {network.interface_name} ({network.cidr})"
