"""
Multi-protocol reachability probe.

ICMP first; if the host ignores ping (common on Windows), try a handful of
service ports in parallel. Any success means online.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .._types import DeviceStatus
from ..scanner.ping import PING_TIMEOUT, ping_host
from ..scanner.tcp import check_tcp

logger = logging.getLogger(__name__)

PROBE_PORTS = [
    (80, "HTTP"),
    (443, "HTTPS"),
    (22, "SSH"),
    (3389, "RDP"),
    (445, "SMB"),
    (53, "DNS"),
]

TCP_PROBE_TIMEOUT = 5.0


@dataclass
class ProbeResult:
    status: DeviceStatus
    response_time_ms: Optional[float] = None
    method: str = "none"


async def _probe_port(ip: str, port: int, name: str) -> Optional[ProbeResult]:
    result = await check_tcp(ip, port, timeout=TCP_PROBE_TIMEOUT)
    if result.online:
        return ProbeResult(DeviceStatus.ONLINE, result.response_time_ms, name)
    return None


async def probe_device(ip: str) -> ProbeResult:
    """Ping, then fall back to TCP ports; offline with method "none" if all fail."""
    ping = await ping_host(ip, timeout=PING_TIMEOUT)
    if ping.online:
        return ProbeResult(DeviceStatus.ONLINE, ping.response_time_ms, "ping")

    logger.debug(f"Ping failed for {ip}, trying TCP ports...")
    tasks = [
        asyncio.create_task(_probe_port(ip, port, name))
        for port, name in PROBE_PORTS
    ]
    try:
        for next_done in asyncio.as_completed(tasks):
            result = await next_done
            if result is not None:
                logger.debug(f"{ip} responded on {result.method}")
                return result
    finally:
        for task in tasks:
            task.cancel()

    return ProbeResult(DeviceStatus.OFFLINE)
