"""
TCP connect probe.
"""

import asyncio
import logging
import time

from .._types import CheckResult, DeviceStatus

logger = logging.getLogger(__name__)

TCP_TIMEOUT = 5.0


async def check_tcp(host: str, port: int, timeout: float = TCP_TIMEOUT) -> CheckResult:
    """Open and immediately close a TCP connection to host:port."""
    start = time.monotonic()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.debug(f"TCP {host}:{port}: timeout")
        return CheckResult(status=DeviceStatus.OFFLINE, error="Connection timeout")
    except OSError as e:
        logger.debug(f"TCP {host}:{port}: closed ({e})")
        return CheckResult(status=DeviceStatus.OFFLINE, error=str(e))

    response_time = round((time.monotonic() - start) * 1000, 2)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass

    logger.debug(f"TCP {host}:{port}: open ({response_time}ms)")
    return CheckResult(status=DeviceStatus.ONLINE, response_time_ms=response_time)
