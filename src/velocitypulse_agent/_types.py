"""
Type definitions for the VelocityPulse agent.

These dataclasses define the domain model shared by discovery, monitoring
and the dashboard client. Wire payloads use the dashboard's snake_case
field names; the local UI uses the camelCase projection in DeviceInfo.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Current UTC timestamp in ISO-8601 with a trailing Z."""
    return now_utc().isoformat().replace("+00:00", "Z")


class DeviceType(str, Enum):
    """Device classification types."""
    SERVER = "server"
    WORKSTATION = "workstation"
    NETWORK = "network"
    PRINTER = "printer"
    IOT = "iot"
    UNKNOWN = "unknown"


class DeviceStatus(str, Enum):
    """Reported reachability of a device."""
    ONLINE = "online"
    OFFLINE = "offline"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


class SegmentType(str, Enum):
    """How the agent treats a network segment."""
    LOCAL_SCAN = "local_scan"
    REMOTE_MONITOR = "remote_monitor"


class CheckType(str, Enum):
    """Health check performed for a monitored device."""
    PING = "ping"
    TCP = "tcp"
    HTTP = "http"
    DNS = "dns"
    SSL = "ssl"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CheckType":
        """Parse a check type, falling back to ping for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.PING


class CommandType(str, Enum):
    """Commands the dashboard can send to the agent."""
    SCAN_NOW = "scan_now"
    SCAN_SEGMENT = "scan_segment"
    UPDATE_CONFIG = "update_config"
    RESTART = "restart"
    UPGRADE = "upgrade"
    PING = "ping"


class CommandStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DiscoverySource(str, Enum):
    """How the device was discovered."""
    ARP = "arp"
    MDNS = "mdns"
    SSDP = "ssdp"
    SNMP = "snmp"


@dataclass
class NetworkSegment:
    """A network segment assigned to this agent by the dashboard."""
    id: str
    name: str
    cidr: str
    scan_interval_seconds: int = 300
    segment_type: SegmentType = SegmentType.LOCAL_SCAN
    is_auto_registered: bool = False
    interface_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkSegment":
        try:
            segment_type = SegmentType(data.get("segment_type") or SegmentType.LOCAL_SCAN)
        except ValueError:
            segment_type = SegmentType.LOCAL_SCAN
        return cls(
            id=str(data["id"]),
            name=data.get("name") or data["cidr"],
            cidr=data["cidr"],
            scan_interval_seconds=int(data.get("scan_interval_seconds") or 300),
            segment_type=segment_type,
            is_auto_registered=bool(data.get("is_auto_registered", False)),
            interface_name=data.get("interface_name"),
        )


@dataclass
class DiscoveredDevice:
    """
    A device produced by discovery and enriched in place.

    Identity is the IP address. Collection fields are sets so that merging
    records from several sources is a plain union.
    """
    ip_address: str
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    manufacturer: Optional[str] = None
    os_hints: set[str] = field(default_factory=set)
    device_type: DeviceType = DeviceType.UNKNOWN
    open_ports: set[int] = field(default_factory=set)
    services: set[str] = field(default_factory=set)
    snmp_info: Optional[dict[str, str]] = None
    upnp_info: Optional[dict[str, str]] = None
    discovery_method: DiscoverySource = DiscoverySource.ARP

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the discovered-devices upload."""
        data: dict[str, Any] = {
            "ip_address": self.ip_address,
            "os_hints": sorted(self.os_hints),
            "device_type": self.device_type.value,
            "open_ports": sorted(self.open_ports),
            "services": sorted(self.services),
            "discovery_method": self.discovery_method.value,
        }
        for key in ("mac_address", "hostname", "manufacturer", "snmp_info", "upnp_info"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data


@dataclass
class DeviceInfo:
    """UI/report projection of a discovered device, keyed by IP."""
    id: str
    name: str
    ip: str
    mac: Optional[str] = None
    status: DeviceStatus = DeviceStatus.UNKNOWN
    response_time: Optional[float] = None
    last_check: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "mac": self.mac,
            "status": self.status.value,
            "responseTime": self.response_time,
            "lastCheck": self.last_check,
        }


@dataclass
class DeviceToMonitor:
    """A dashboard-registered device with an explicit check configuration."""
    id: str
    ip_address: Optional[str] = None
    hostname: Optional[str] = None
    check_type: CheckType = CheckType.PING
    port: Optional[int] = None
    url: Optional[str] = None
    is_monitored: bool = True
    check_interval_seconds: Optional[int] = None
    ssl_expiry_warn_days: Optional[int] = None
    dns_expected_ip: Optional[str] = None
    network_segment_id: Optional[str] = None

    @property
    def target(self) -> Optional[str]:
        """Host name if known, else IP address."""
        return self.hostname or self.ip_address

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceToMonitor":
        return cls(
            id=str(data["id"]),
            ip_address=data.get("ip_address"),
            hostname=data.get("hostname"),
            check_type=CheckType.parse(data.get("check_type")),
            port=data.get("port"),
            url=data.get("url"),
            is_monitored=bool(data.get("is_monitored", True)),
            check_interval_seconds=data.get("check_interval_seconds"),
            ssl_expiry_warn_days=data.get("ssl_expiry_warn_days"),
            dns_expected_ip=data.get("dns_expected_ip"),
            network_segment_id=data.get("network_segment_id"),
        )


@dataclass
class StatusReport:
    """Outbound result of a single device check."""
    ip_address: str
    status: DeviceStatus
    check_type: CheckType
    response_time_ms: Optional[float] = None
    device_id: Optional[str] = None
    checked_at: str = field(default_factory=iso_now)
    error: Optional[str] = None
    ssl_expiry_at: Optional[str] = None
    ssl_issuer: Optional[str] = None
    ssl_subject: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ip_address": self.ip_address,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "check_type": self.check_type.value,
            "checked_at": self.checked_at,
        }
        for key in ("device_id", "error", "ssl_expiry_at", "ssl_issuer", "ssl_subject"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class CheckResult:
    """Result of a single health check or probe."""
    status: DeviceStatus
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    ssl_expiry_at: Optional[str] = None
    ssl_issuer: Optional[str] = None
    ssl_subject: Optional[str] = None

    @property
    def online(self) -> bool:
        return self.status == DeviceStatus.ONLINE


@dataclass
class AgentCommand:
    """
    A command delivered by heartbeat polling or the realtime channel.

    command_type is kept as the raw string so that unknown types can still
    be acknowledged as failures.
    """
    id: str
    command_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = CommandStatus.PENDING.value
    created_at: Optional[str] = None

    @property
    def kind(self) -> Optional[CommandType]:
        try:
            return CommandType(self.command_type)
        except ValueError:
            return None

    @property
    def is_pending(self) -> bool:
        return self.status == CommandStatus.PENDING.value

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentCommand":
        return cls(
            id=str(data["id"]),
            command_type=str(data.get("command_type", "")),
            payload=data.get("payload") or {},
            status=data.get("status") or CommandStatus.PENDING.value,
            created_at=data.get("created_at"),
        )
