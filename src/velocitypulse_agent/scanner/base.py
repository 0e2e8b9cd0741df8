"""
Base classes for discovery methods.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .._types import DiscoveredDevice


class DiscoveryMethod(ABC):
    """Base class for local discovery sources (ARP, mDNS, SSDP)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this discovery method."""
        pass

    @abstractmethod
    async def discover(self, cidr: str) -> list[DiscoveredDevice]:
        """
        Discover devices for a segment.

        Implementations log their own failures and return [] rather than
        raising, so one broken source never hides the others.
        """
        pass

    async def is_available(self) -> bool:
        """Check if this discovery method is available."""
        return True


class UnavailableDiscovery(DiscoveryMethod):
    """Stand-in for a source that failed its availability check at startup."""

    def __init__(self, name: str, reason: str = "unavailable"):
        self._name = name
        self.reason = reason

    @property
    def name(self) -> str:
        return self._name

    async def discover(self, cidr: str) -> list[DiscoveredDevice]:
        return []

    async def is_available(self) -> bool:
        return False
