"""
ICMP ping sweep for segments that are not directly attached.

No layer-2 visibility across a router, so swept devices carry no MAC or
manufacturer.
"""

import ipaddress
import logging

from .._types import DiscoveredDevice, DiscoverySource
from ..utils.ip_utils import expand_cidr
from ..utils.pool import run_pool
from .ping import ping_host

logger = logging.getLogger(__name__)

PING_SWEEP_CONCURRENCY = 50


async def ping_sweep(cidr: str, concurrency: int = PING_SWEEP_CONCURRENCY) -> list[DiscoveredDevice]:
    """Ping every usable address in cidr; responders become devices."""
    ips = expand_cidr(cidr)
    logger.info(f"Ping sweep starting for {cidr} ({len(ips)} IPs, concurrency: {concurrency})")

    results = await run_pool(ips, ping_host, concurrency)
    responders = sorted(
        (ip for ip, result in results if result.online),
        key=ipaddress.IPv4Address,
    )

    # The dashboard accepts arp/mdns/ssdp/snmp; a sweep is reported as arp.
    devices = [
        DiscoveredDevice(ip_address=ip, discovery_method=DiscoverySource.ARP)
        for ip in responders
    ]

    logger.info(f"Ping sweep complete: {len(devices)}/{len(ips)} hosts responded")
    return devices
