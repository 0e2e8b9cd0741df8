"""
ICMP ping via the system ping binary.

The agent does not open raw sockets; it parses the platform ping output
for reply markers, round-trip time and TTL.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import sys
import time
from dataclasses import dataclass
from typing import Optional

from .._types import CheckResult, DeviceStatus
from ..utils.ip_utils import parse_network
from ..utils.process import run_command

logger = logging.getLogger(__name__)

PING_TIMEOUT = 5.0
TTL_TIMEOUT = 2.0

_UNIX_TIME = re.compile(r"time[=]?([\d.]+)\s*ms", re.IGNORECASE)
_WINDOWS_TIME = re.compile(r"time[=<](\d+)ms", re.IGNORECASE)
_TTL = re.compile(r"ttl[=:]?\s*(\d+)", re.IGNORECASE)


def is_windows() -> bool:
    return sys.platform == "win32"


@dataclass
class PingOutput:
    """Parsed ping output."""
    success: bool
    time_ms: Optional[float] = None
    ttl: Optional[int] = None


def build_ping_command(ip: str, timeout: float, windows: bool) -> list[str]:
    if windows:
        return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), ip]
    return ["ping", "-c", "1", "-W", str(max(1, int(timeout))), ip]


def parse_ping_output(output: str, windows: bool = False) -> PingOutput:
    """
    Parse one-packet ping output.

    Unix:    "64 bytes from 10.0.0.1: icmp_seq=1 ttl=64 time=1.23 ms"
    Windows: "Reply from 10.0.0.1: bytes=32 time<1ms TTL=128"
    """
    if windows:
        success = "Reply from" in output and "Destination host unreachable" not in output
        time_match = _WINDOWS_TIME.search(output)
    else:
        success = "bytes from" in output or "1 received" in output
        time_match = _UNIX_TIME.search(output)

    ttl_match = _TTL.search(output)

    return PingOutput(
        success=success,
        time_ms=float(time_match.group(1)) if time_match else None,
        ttl=int(ttl_match.group(1)) if ttl_match else None,
    )


async def ping_host(ip: str, timeout: float = PING_TIMEOUT) -> CheckResult:
    """Ping a host once; offline on no reply, timeout or command failure."""
    windows = is_windows()
    start = time.monotonic()
    _, stdout, stderr = await run_command(
        build_ping_command(ip, timeout, windows), timeout=timeout + 1
    )
    elapsed_ms = (time.monotonic() - start) * 1000

    parsed = parse_ping_output(stdout, windows)
    if not parsed.success:
        error = stderr.strip() or "No reply"
        logger.debug(f"Ping {ip}: offline ({error})")
        return CheckResult(status=DeviceStatus.OFFLINE, error=error)

    response_time = parsed.time_ms if parsed.time_ms is not None else elapsed_ms
    logger.debug(f"Ping {ip}: online ({response_time:.1f}ms)")
    return CheckResult(status=DeviceStatus.ONLINE, response_time_ms=round(response_time, 2))


async def get_ttl(ip: str, timeout: float = TTL_TIMEOUT) -> Optional[int]:
    """Return the reply TTL for a host, or None if it did not answer."""
    windows = is_windows()
    _, stdout, _ = await run_command(
        build_ping_command(ip, timeout, windows), timeout=timeout + 3
    )
    parsed = parse_ping_output(stdout, windows)
    if parsed.ttl is None:
        logger.debug(f"TTL detection failed for {ip}")
    return parsed.ttl


def broadcast_address(cidr: str) -> str:
    network = parse_network(cidr)
    if network.prefixlen >= 31:
        return str(network.network_address)
    return str(network.broadcast_address)


async def ping_broadcast(cidr: str) -> None:
    """
    Ping the segment broadcast address to warm the OS ARP cache.

    Most hosts ignore broadcast echo requests; the result is irrelevant.
    """
    address = broadcast_address(cidr)
    logger.debug(f"Pinging broadcast address {address}")
    windows = is_windows()
    cmd = build_ping_command(address, 1, windows)
    if sys.platform.startswith("linux"):
        cmd.insert(1, "-b")
    await run_command(cmd, timeout=5)


def is_network_or_broadcast(ip: str) -> bool:
    """True for addresses ending in .0 or .255."""
    try:
        last_octet = int(ipaddress.IPv4Address(ip).packed[-1])
    except ValueError:
        return False
    return last_octet in (0, 255)
