"""
TCP connect scan over a fixed list of well-known ports.
"""

import logging

from ..utils.pool import run_pool
from .tcp import check_tcp

logger = logging.getLogger(__name__)

COMMON_PORTS = [
    21,    # FTP
    22,    # SSH
    23,    # Telnet
    25,    # SMTP
    53,    # DNS
    80,    # HTTP
    110,   # POP3
    135,   # MSRPC
    139,   # NetBIOS
    143,   # IMAP
    443,   # HTTPS
    445,   # SMB
    993,   # IMAPS
    995,   # POP3S
    1433,  # MSSQL
    3306,  # MySQL
    3389,  # RDP
    5432,  # PostgreSQL
    8080,  # HTTP Alt
    8443,  # HTTPS Alt
]

PORT_SERVICES = {
    21: "ftp", 22: "ssh", 23: "telnet", 25: "smtp", 53: "dns",
    80: "http", 110: "pop3", 135: "msrpc", 139: "netbios", 143: "imap",
    443: "https", 445: "smb", 993: "imaps", 995: "pop3s", 1433: "mssql",
    3306: "mysql", 3389: "rdp", 5432: "postgresql", 8080: "http-alt", 8443: "https-alt",
    5900: "vnc", 6379: "redis", 27017: "mongodb", 9200: "elasticsearch",
    161: "snmp", 162: "snmptrap", 514: "syslog", 1883: "mqtt",
}

PORT_SCAN_CONCURRENCY = 10
PORT_SCAN_TIMEOUT = 2.0


def services_for_ports(ports) -> set[str]:
    return {PORT_SERVICES[p] for p in ports if p in PORT_SERVICES}


async def scan_ports(
    ip: str,
    ports: list[int] = COMMON_PORTS,
    concurrency: int = PORT_SCAN_CONCURRENCY,
    timeout: float = PORT_SCAN_TIMEOUT,
) -> list[int]:
    """Return the sorted list of open ports on ip."""

    async def probe(port: int):
        return await check_tcp(ip, port, timeout=timeout)

    results = await run_pool(ports, probe, concurrency)
    open_ports = sorted(port for port, result in results if result.online)

    if open_ports:
        logger.debug(f"Port scan {ip}: {len(open_ports)} open ports {open_ports}")
    return open_ports
