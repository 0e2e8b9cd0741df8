"""
Subprocess helper for the ping/arp capability primitives.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_command(cmd: list[str], timeout: float = 30) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr); never raises."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return -1, "", str(e)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return -1, "", "Command timed out"

    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")
