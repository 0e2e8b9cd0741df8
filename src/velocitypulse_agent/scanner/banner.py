"""
Service banner grabbing.

Many services identify themselves on connect (SSH, SMTP, FTP); web ports
get an HTTP HEAD nudge so they answer with a status line and headers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ..utils.pool import run_pool

logger = logging.getLogger(__name__)

BANNER_TIMEOUT = 3.0
BANNER_CONCURRENCY = 5
MAX_BANNER_BYTES = 512
MAX_BANNER_LENGTH = 256

HTTP_PROBE_PORTS = {80, 8080, 8443, 443}
HTTP_PROBE = b"HEAD / HTTP/1.0\r\nHost: localhost\r\n\r\n"


@dataclass
class Banner:
    port: int
    banner: str
    service: Optional[str] = None


def identify_service(banner: str, port: int) -> Optional[str]:
    """Classify a service from its banner text."""
    lower = banner.lower()

    if lower.startswith("ssh-"):
        return "ssh"
    if "220" in lower and ("ftp" in lower or port == 21):
        return "ftp"
    if "220" in lower and ("smtp" in lower or "mail" in lower or port == 25):
        return "smtp"
    if lower.startswith("http/"):
        return "http"
    if "mysql" in lower:
        return "mysql"
    if "postgresql" in lower or "postgres" in lower:
        return "postgresql"
    if "redis" in lower:
        return "redis"
    if "mongodb" in lower or "mongo" in lower:
        return "mongodb"
    if "microsoft" in lower and "sql" in lower:
        return "mssql"
    if "imap" in lower:
        return "imap"
    if "pop3" in lower or "+ok" in lower:
        return "pop3"
    if "telnet" in lower:
        return "telnet"
    if "vnc" in lower:
        return "vnc"
    if "apache" in lower or "nginx" in lower or "server:" in lower:
        return "http"
    return None


def clean_banner(data: bytes) -> str:
    """First line, trimmed and capped."""
    text = data.decode("utf-8", errors="replace")
    return text.split("\n", 1)[0].strip()[:MAX_BANNER_LENGTH]


async def _read_until_idle(reader: asyncio.StreamReader, timeout: float) -> bytes:
    data = b""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(data) < MAX_BANNER_BYTES:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            chunk = await asyncio.wait_for(
                reader.read(MAX_BANNER_BYTES - len(data)), timeout=remaining
            )
        except asyncio.TimeoutError:
            break
        if not chunk:
            break
        data += chunk
    return data


async def grab_banner(ip: str, port: int, timeout: float = BANNER_TIMEOUT) -> Optional[Banner]:
    """Read up to 512 bytes from ip:port; None if nothing was sent."""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return None

    try:
        if port in HTTP_PROBE_PORTS:
            writer.write(HTTP_PROBE)
            await writer.drain()
        data = await _read_until_idle(reader, timeout)
    except OSError:
        data = b""
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    if not data:
        return None

    text = clean_banner(data)
    logger.debug(f"Banner {ip}:{port}: {text[:80]}")
    return Banner(port=port, banner=text, service=identify_service(text, port))


async def grab_banners(
    ip: str,
    ports: list[int],
    concurrency: int = BANNER_CONCURRENCY,
) -> list[Banner]:
    """Grab banners from several open ports with bounded concurrency."""

    async def grab(port: int) -> Optional[Banner]:
        return await grab_banner(ip, port)

    results = await run_pool(ports, grab, concurrency)
    return [banner for _, banner in results if banner is not None]
