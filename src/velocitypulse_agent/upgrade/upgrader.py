"""
Self-upgrade trigger.

Downloads a release archive and installs it into the running interpreter
with pip. Replacing the running process is left to the service manager:
on success the agent exits with its restart code and is started again on
the new version.
"""

import logging
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import aiohttp

from ..utils.process import run_command
from ..utils.version import VERSION

logger = logging.getLogger(__name__)

MIN_ARCHIVE_BYTES = 1024
DOWNLOAD_TIMEOUT = 300
INSTALL_TIMEOUT = 600


@dataclass
class UpgradeResult:
    success: bool
    message: str
    previous_version: str = VERSION
    target_version: Optional[str] = None


def _archive_name(download_url: str, target_version: str) -> str:
    name = Path(urlparse(download_url).path).name
    if name.endswith((".whl", ".tar.gz", ".zip")):
        return name
    return f"velocitypulse_agent-{target_version}.tar.gz"


async def download_archive(download_url: str, dest: Path) -> int:
    """Stream download_url to dest and return its size in bytes."""
    timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT)
    size = 0
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(download_url) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                async for chunk in response.content.iter_chunked(64 * 1024):
                    f.write(chunk)
                    size += len(chunk)
    return size


async def perform_upgrade(target_version: str, download_url: str) -> UpgradeResult:
    """
    Download and install target_version.

    Returns:
        UpgradeResult; never raises for download or install failures.
    """
    logger.info(f"Starting upgrade: {VERSION} -> {target_version}")

    with tempfile.TemporaryDirectory(prefix="velocitypulse-upgrade-") as temp_dir:
        archive = Path(temp_dir) / _archive_name(download_url, target_version)

        try:
            logger.info(f"Downloading from: {download_url}")
            size = await download_archive(download_url, archive)
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            logger.error(f"Upgrade download failed: {e}")
            return UpgradeResult(False, f"Upgrade failed: {e}", VERSION, target_version)

        if size < MIN_ARCHIVE_BYTES:
            logger.error(f"Downloaded archive too small ({size} bytes)")
            return UpgradeResult(
                False,
                f"Upgrade failed: downloaded file too small ({size} bytes)",
                VERSION,
                target_version,
            )
        logger.info(f"Downloaded: {size / 1024 / 1024:.1f} MB")

        rc, _, stderr = await run_command(
            [sys.executable, "-m", "pip", "install", "--upgrade", str(archive)],
            timeout=INSTALL_TIMEOUT,
        )

    if rc != 0:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"pip exited with {rc}"
        logger.error(f"Upgrade install failed: {detail}")
        return UpgradeResult(False, f"Upgrade failed: {detail}", VERSION, target_version)

    logger.info(f"Upgrade installed: {VERSION} -> {target_version}")
    return UpgradeResult(
        True,
        f"Upgrade initiated: {VERSION} -> {target_version}. Agent will restart.",
        VERSION,
        target_version,
    )
