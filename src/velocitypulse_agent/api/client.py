"""
VelocityPulse dashboard API client.

Uses API key authentication via Bearer token. Transport failures are
retried with exponential backoff and then reported as status 0; typed
wrappers return None (or False) on any non-2xx outcome so the agent's
loops never see transport exceptions.
"""

import asyncio
import logging
import socket
import time
from typing import Any, Dict, List, Optional

import aiohttp

from .._types import (
    DeviceToMonitor,
    DiscoveredDevice,
    NetworkSegment,
    StatusReport,
    iso_now,
)
from ..utils.version import VERSION

logger = logging.getLogger(__name__)

API_PREFIX = "/api/agent"

_PROCESS_START = time.monotonic()


class ControllerClient:
    """
    HTTP client for the dashboard's agent API.

    All endpoints live under {dashboard_url}/api/agent.
    """

    def __init__(
        self,
        dashboard_url: str,
        api_key: str,
        max_retries: int = 3,
        timeout: int = 30
    ):
        """
        Initialize the dashboard client.

        Args:
            dashboard_url: Dashboard base URL (no trailing slash)
            api_key: Agent API key
            max_retries: Maximum attempts per request
            timeout: Request timeout in seconds
        """
        self.base_url = dashboard_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    'User-Agent': f'VelocityPulse-Agent/{VERSION}',
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json',
                    'X-Agent-Client': f'VelocityPulse-Agent/{VERSION}',
                }
            )
        return self._session

    async def close(self):
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None,
    ) -> tuple[int, Dict[str, Any]]:
        """
        Make an HTTP request with retry logic.

        Returns:
            Tuple of (status_code, response_json); status 0 when every
            attempt failed at the transport level.
        """
        url = f"{self.base_url}{API_PREFIX}{endpoint}"
        session = await self._get_session()
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries):
            try:
                async with session.request(method, url, json=json_data) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = {"error": await response.text()}
                    if not isinstance(data, dict):
                        data = {"data": data}

                    return response.status, data

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(
                    f"{method} {endpoint} failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{e or type(e).__name__}"
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)

        logger.error(f"All retries failed for {method} {endpoint}: {last_error}")
        return 0, {"error": str(last_error) or type(last_error).__name__}

    @staticmethod
    def _ok(status: int) -> bool:
        return 200 <= status < 300

    # =========================================================================
    # Heartbeat
    # =========================================================================

    async def heartbeat(self, version: str = VERSION, hostname: Optional[str] = None) -> Optional[Dict]:
        """
        Send a heartbeat and receive segment assignments and pending commands.

        Returns:
            Response dict if successful, None otherwise.
        """
        payload = {
            "version": version,
            "hostname": hostname or get_hostname(),
            "uptime_seconds": get_uptime_seconds(),
        }

        status, response = await self._request('POST', '/heartbeat', json_data=payload)

        if self._ok(status):
            logger.debug(
                f"Heartbeat response: {len(response.get('segments') or [])} segments, "
                f"org: {response.get('organization_id')}"
            )
            return response
        logger.warning(f"Heartbeat failed: {status} - {response}")
        return None

    # =========================================================================
    # Devices
    # =========================================================================

    async def upload_discovered_devices(
        self,
        segment_id: str,
        devices: List[DiscoveredDevice],
    ) -> Optional[Dict]:
        """Upload scan results for a segment; returns {created, updated, unchanged}."""
        logger.debug(f"Uploading {len(devices)} discovered devices for segment {segment_id}")
        payload = {
            "segment_id": segment_id,
            "scan_timestamp": iso_now(),
            "devices": [d.to_dict() for d in devices],
        }

        status, response = await self._request('POST', '/devices/discovered', json_data=payload)

        if self._ok(status):
            return response
        logger.warning(f"Discovered device upload failed: {status} - {response}")
        return None

    async def get_devices_to_monitor(self) -> Optional[List[DeviceToMonitor]]:
        """Fetch the devices the dashboard tracks for this agent."""
        status, response = await self._request('GET', '/devices')

        if not self._ok(status):
            logger.warning(f"Device list fetch failed: {status} - {response}")
            return None

        devices = []
        for item in response.get("devices") or []:
            try:
                devices.append(DeviceToMonitor.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed device record {item}: {e}")
        return devices

    async def upload_status_reports(self, reports: List[StatusReport]) -> Optional[Dict]:
        """Upload status reports; returns {processed, errors}."""
        logger.debug(f"Uploading {len(reports)} status reports")
        payload = {"reports": [r.to_dict() for r in reports]}

        status, response = await self._request('POST', '/devices/status', json_data=payload)

        if self._ok(status):
            return response
        logger.warning(f"Status upload failed: {status} - {response}")
        return None

    # =========================================================================
    # Segments
    # =========================================================================

    async def register_auto_segment(
        self,
        cidr: str,
        name: str,
        interface_name: str,
    ) -> Optional[NetworkSegment]:
        """Register an auto-detected local network as a segment."""
        logger.info(f"Registering auto-detected segment: {name} ({cidr})")
        payload = {"cidr": cidr, "name": name, "interface_name": interface_name}

        status, response = await self._request('POST', '/segments/register', json_data=payload)

        if self._ok(status) and response.get("segment"):
            return NetworkSegment.from_dict(response["segment"])
        logger.warning(f"Segment registration failed: {status} - {response}")
        return None

    # =========================================================================
    # Commands
    # =========================================================================

    async def acknowledge_command(
        self,
        command_id: str,
        success: bool,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Report the outcome of a command."""
        payload: Dict[str, Any] = {"success": success}
        if result is not None:
            payload["result"] = result
        if error is not None:
            payload["error"] = error

        status, response = await self._request(
            'POST', f'/commands/{command_id}/ack', json_data=payload
        )

        if self._ok(status):
            logger.debug(f"Command {command_id} acknowledged (success={success})")
            return True
        logger.warning(f"Command ack failed for {command_id}: {status} - {response}")
        return False

    async def send_pong(self, command_id: Optional[str] = None) -> Optional[float]:
        """
        Answer a ping command.

        The dashboard acknowledges the command itself when command_id is
        given. Returns the latency it measured.
        """
        payload: Dict[str, Any] = {"agent_timestamp": iso_now()}
        if command_id:
            payload["command_id"] = command_id

        status, response = await self._request('POST', '/ping', json_data=payload)

        if self._ok(status):
            return response.get("latency_ms")
        logger.warning(f"Pong failed: {status} - {response}")
        return None

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# =============================================================================
# Helper functions for heartbeat metadata
# =============================================================================

def get_hostname() -> str:
    """Get system hostname."""
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def get_uptime_seconds() -> int:
    """Seconds since the agent process started."""
    return int(time.monotonic() - _PROCESS_START)
