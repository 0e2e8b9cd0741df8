"""
Failure hysteresis for reported device status.

A device that was online must fail `threshold` consecutive probes before
it is reported offline. Recovery is reported immediately.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .._types import DeviceStatus
from ..scanner.ping import is_network_or_broadcast

logger = logging.getLogger(__name__)


class HysteresisTracker:
    """Per-IP failure counters and last reported status."""

    def __init__(self, threshold: int = 2):
        self.threshold = threshold
        self.failure_counts: dict[str, int] = {}
        self.last_known_status: dict[str, DeviceStatus] = {}

    def apply(self, ip: str, observed: DeviceStatus) -> DeviceStatus:
        """Turn a raw probe observation into the status to report."""
        if is_network_or_broadcast(ip):
            return DeviceStatus.OFFLINE

        previous = self.last_known_status.get(ip)
        failures = self.failure_counts.get(ip, 0)
        status = observed

        if observed == DeviceStatus.OFFLINE and previous == DeviceStatus.ONLINE:
            if failures < self.threshold:
                self.failure_counts[ip] = failures + 1
                status = DeviceStatus.ONLINE
        elif observed == DeviceStatus.ONLINE:
            self.failure_counts[ip] = 0

        self.last_known_status[ip] = status
        return status

    def prune(self, active_ips: Iterable[str]) -> int:
        """Forget IPs not in active_ips; returns how many were dropped."""
        active = set(active_ips)
        stale = (set(self.failure_counts) | set(self.last_known_status)) - active
        for ip in stale:
            self.failure_counts.pop(ip, None)
            self.last_known_status.pop(ip, None)
        if stale:
            logger.debug(f"Pruned {len(stale)} stale device tracking entries")
        return len(stale)
