"""
Discovery and enrichment primitives.

Local segments use ARP + mDNS + SSDP, remote segments a ping sweep;
discovered devices are then enriched with ports, banners, OS hints and
SNMP system info.
"""

from .base import DiscoveryMethod, UnavailableDiscovery
from .discover import (
    DeviceDiscovery,
    EnrichmentOptions,
    discover_devices,
    enrich_devices,
    merge_devices,
)

__all__ = [
    "DeviceDiscovery",
    "DiscoveryMethod",
    "EnrichmentOptions",
    "UnavailableDiscovery",
    "discover_devices",
    "enrich_devices",
    "merge_devices",
]
