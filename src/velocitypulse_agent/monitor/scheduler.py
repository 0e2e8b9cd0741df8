"""
Remote-monitor scheduler.

Each dashboard-registered device has its own check interval; a device is
checked only when its own interval has elapsed since its last check.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from .._types import CheckResult, CheckType, DeviceStatus, DeviceToMonitor, StatusReport
from ..scanner.ping import ping_host
from ..scanner.tcp import check_tcp
from .checks import SSL_WARN_DAYS, check_dns, check_http, check_ssl

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 60
DEFAULT_TCP_PORT = 443
DEFAULT_SSL_PORT = 443


async def run_check(device: DeviceToMonitor) -> CheckResult:
    """Dispatch one device to the check for its check_type."""
    target = device.target

    match device.check_type:
        case CheckType.TCP:
            return await check_tcp(target, device.port or DEFAULT_TCP_PORT)
        case CheckType.HTTP:
            return await check_http(device.url or f"https://{target}")
        case CheckType.DNS:
            return await check_dns(target, device.dns_expected_ip)
        case CheckType.SSL:
            return await check_ssl(
                target,
                device.port or DEFAULT_SSL_PORT,
                device.ssl_expiry_warn_days or SSL_WARN_DAYS,
            )
        case CheckType.PING:
            return await ping_host(target)


class RemoteMonitorScheduler:
    """Tracks last-check time per device ID and runs checks that are due."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.last_checks: dict[str, float] = {}

    def is_due(self, device: DeviceToMonitor, now: float) -> bool:
        interval = device.check_interval_seconds or DEFAULT_CHECK_INTERVAL
        last = self.last_checks.get(device.id)
        return last is None or now - last >= interval

    async def run_due_checks(self, devices: Iterable[DeviceToMonitor]) -> list[StatusReport]:
        """Check every due device and return one report per completed check."""
        devices = list(devices)
        now = self.clock()
        reports = []

        for device in devices:
            if not self.is_due(device, now):
                continue
            self.last_checks[device.id] = now

            target = device.target
            if not target:
                continue

            try:
                result = await run_check(device)
            except Exception as e:
                logger.error(f"Remote check failed for {target}: {e}")
                continue

            reports.append(StatusReport(
                device_id=device.id,
                ip_address=device.ip_address or target,
                status=result.status,
                response_time_ms=result.response_time_ms,
                check_type=device.check_type,
                error=result.error if result.status != DeviceStatus.ONLINE else None,
                ssl_expiry_at=result.ssl_expiry_at,
                ssl_issuer=result.ssl_issuer,
                ssl_subject=result.ssl_subject,
            ))
            logger.debug(f"Remote check {target} ({device.check_type.value}): {result.status.value}")

        self.prune(device.id for device in devices)
        return reports

    def prune(self, active_ids: Iterable[str]) -> None:
        active = set(active_ids)
        for device_id in list(self.last_checks):
            if device_id not in active:
                del self.last_checks[device_id]

