"""
OS and device-type heuristics.

TTL ranges (from one ping):
  97-128   Windows            -> workstation
  33-64    Linux/Unix         -> server
  241-255  Network Equipment  -> network
  1-32     Embedded/IoT       -> iot

Open ports and services then refine the guess. Hints accumulate; the
device type is only ever replaced by another concrete type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .._types import DeviceType
from .ping import get_ttl

logger = logging.getLogger(__name__)

DATABASE_PORTS = {3306, 5432, 27017, 6379}
MAIL_PORTS = {25, 587, 993}


@dataclass
class OSDetection:
    os_hints: list[str] = field(default_factory=list)
    device_type: DeviceType = DeviceType.UNKNOWN

    def hint(self, value: str) -> None:
        if value not in self.os_hints:
            self.os_hints.append(value)


def classify_ttl(ttl: Optional[int]) -> OSDetection:
    result = OSDetection()
    if ttl is None:
        return result

    if 97 <= ttl <= 128:
        result.hint("Windows")
        result.device_type = DeviceType.WORKSTATION
    elif 33 <= ttl <= 64:
        result.hint("Linux/Unix")
        result.device_type = DeviceType.SERVER
    elif 241 <= ttl <= 255:
        result.hint("Network Equipment")
        result.device_type = DeviceType.NETWORK
    elif 1 <= ttl <= 32:
        result.hint("Embedded/IoT")
        result.device_type = DeviceType.IOT
    return result


def apply_port_heuristics(
    result: OSDetection,
    open_ports: Iterable[int],
    services: Iterable[str],
) -> OSDetection:
    ports = set(open_ports)
    svcs = set(services)

    if 3389 in ports:
        result.hint("Windows")
        result.device_type = DeviceType.WORKSTATION

    if 22 in ports and 3389 not in ports:
        if not any("Linux" in h for h in result.os_hints):
            result.hint("Linux/Unix")
        if result.device_type == DeviceType.UNKNOWN:
            result.device_type = DeviceType.SERVER

    if 631 in ports or 9100 in ports or "ipp" in svcs:
        result.hint("Printer")
        result.device_type = DeviceType.PRINTER

    if 161 in ports and 22 not in ports and 3389 not in ports:
        result.hint("Network Equipment")
        result.device_type = DeviceType.NETWORK

    if 80 in ports or 443 in ports:
        if ports & DATABASE_PORTS:
            result.hint("Database Server")
            result.device_type = DeviceType.SERVER
        elif ports & MAIL_PORTS:
            result.hint("Mail Server")
            result.device_type = DeviceType.SERVER

    # Bonjour-style SSH + HTTP without SMB/RDP is often a Mac.
    if "ssh" in svcs and "http" in svcs and 445 not in ports and 3389 not in ports:
        if any("Linux/Unix" in h for h in result.os_hints):
            result.hint("macOS (possible)")

    return result


async def detect_os(
    ip: str,
    open_ports: Iterable[int] = (),
    services: Iterable[str] = (),
) -> OSDetection:
    """Combine TTL and port/service signals into OS hints and a device type."""
    result = classify_ttl(await get_ttl(ip))
    apply_port_heuristics(result, open_ports, services)
    logger.debug(
        f"OS detect {ip}: hints=[{', '.join(result.os_hints)}], type={result.device_type.value}"
    )
    return result
