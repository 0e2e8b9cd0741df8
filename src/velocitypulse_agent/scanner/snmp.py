"""
SNMP v2c system-group query.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
)

logger = logging.getLogger(__name__)

SNMP_COMMUNITY = "public"
SNMP_TIMEOUT = 3.0
SNMP_RETRIES = 0

SYSTEM_OIDS = {
    "1.3.6.1.2.1.1.1.0": "sysDescr",
    "1.3.6.1.2.1.1.5.0": "sysName",
    "1.3.6.1.2.1.1.4.0": "sysContact",
    "1.3.6.1.2.1.1.6.0": "sysLocation",
}


def _parse_var_binds(var_binds) -> dict[str, str]:
    info = {}
    for name, value in var_binds:
        oid = str(name.getOid()) if hasattr(name, "getOid") else str(name)
        key = SYSTEM_OIDS.get(oid.lstrip("."))
        text = value.prettyPrint() if hasattr(value, "prettyPrint") else str(value)
        if key and text and not text.startswith("No Such"):
            info[key] = text
    return info


async def query_snmp(
    ip: str,
    community: str = SNMP_COMMUNITY,
    timeout: float = SNMP_TIMEOUT,
) -> Optional[dict[str, str]]:
    """
    Read sysDescr, sysName, sysContact and sysLocation from a host.

    Returns None when the host does not answer or returns no values.
    """
    engine = SnmpEngine()
    try:
        target = await UdpTransportTarget.create((ip, 161), timeout=timeout, retries=SNMP_RETRIES)
        error_indication, error_status, _, var_binds = await asyncio.wait_for(
            get_cmd(
                engine,
                CommunityData(community, mpModel=1),
                target,
                ContextData(),
                *(ObjectType(ObjectIdentity(oid)) for oid in SYSTEM_OIDS),
                lookupMib=False,
            ),
            timeout=timeout + 1,
        )
    except asyncio.TimeoutError:
        logger.debug(f"SNMP {ip}: timeout")
        return None
    except Exception as e:
        logger.debug(f"SNMP {ip}: {e}")
        return None
    finally:
        engine.close_dispatcher()

    if error_indication or error_status:
        logger.debug(f"SNMP {ip}: {error_indication or error_status.prettyPrint()}")
        return None

    info = _parse_var_binds(var_binds)
    if not info:
        return None

    logger.debug(f"SNMP {ip}: {info.get('sysName', '')}")
    return info
