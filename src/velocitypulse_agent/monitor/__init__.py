"""
Health monitoring: the probe cascade and hysteresis for discovered
devices, and per-device scheduled checks for remote-monitored devices.
"""

from .hysteresis import HysteresisTracker
from .probe import ProbeResult, probe_device
from .scheduler import RemoteMonitorScheduler

__all__ = [
    "HysteresisTracker",
    "ProbeResult",
    "RemoteMonitorScheduler",
    "probe_device",
]
