"""
Health checks for remote-monitored devices: HTTP, DNS and TLS certificate.

Every check resolves to a CheckResult by its deadline; failures become
offline (or degraded) results, never exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import time
from datetime import datetime, timezone
from typing import Optional

import aiohttp
import dns.asyncresolver
import dns.exception
import dns.resolver
from cryptography import x509
from cryptography.x509.oid import NameOID

from .._types import CheckResult, DeviceStatus
from ..utils.version import VERSION

logger = logging.getLogger(__name__)

CHECK_TIMEOUT = 10.0
HTTP_MAX_REDIRECTS = 5
DNS_RESOLVERS = ["8.8.8.8", "1.1.1.1"]
SSL_WARN_DAYS = 30


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


# ============================================================================
# HTTP
# ============================================================================

def status_for_http_code(code: int) -> DeviceStatus:
    """2xx/3xx online, 4xx/5xx degraded."""
    if code >= 400:
        return DeviceStatus.DEGRADED
    return DeviceStatus.ONLINE


async def check_http(url: str, timeout: float = CHECK_TIMEOUT) -> CheckResult:
    """GET url, following up to five redirects."""
    start = time.monotonic()
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    headers = {"User-Agent": f"VelocityPulse-Agent/{VERSION}"}

    try:
        async with aiohttp.ClientSession(timeout=client_timeout, headers=headers) as session:
            async with session.get(url, max_redirects=HTTP_MAX_REDIRECTS) as response:
                code = response.status
    except asyncio.TimeoutError:
        logger.debug(f"HTTP {url}: offline (timeout)")
        return CheckResult(DeviceStatus.OFFLINE, error="Connection timeout")
    except aiohttp.ClientConnectorCertificateError as e:
        logger.debug(f"HTTP {url}: offline (certificate: {e})")
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error="SSL certificate error")
    except aiohttp.ClientConnectorError as e:
        logger.debug(f"HTTP {url}: offline ({e})")
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error=str(e))
    except (aiohttp.ClientError, ValueError) as e:
        logger.debug(f"HTTP {url}: offline ({e})")
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error=str(e) or type(e).__name__)

    response_time = _elapsed_ms(start)
    status = status_for_http_code(code)
    logger.debug(f"HTTP {url}: {status.value} ({code}, {response_time}ms)")
    return CheckResult(status, response_time)


# ============================================================================
# DNS
# ============================================================================

def make_resolver(timeout: float = CHECK_TIMEOUT) -> dns.asyncresolver.Resolver:
    resolver = dns.asyncresolver.Resolver(configure=False)
    resolver.nameservers = list(DNS_RESOLVERS)
    resolver.lifetime = timeout
    resolver.timeout = timeout
    return resolver


async def check_dns(
    hostname: str,
    expected_ip: Optional[str] = None,
    timeout: float = CHECK_TIMEOUT,
    resolver: Optional[dns.asyncresolver.Resolver] = None,
) -> CheckResult:
    """
    Resolve A records for hostname via public resolvers.

    online if it resolves (to expected_ip when given), degraded if it
    resolves elsewhere, offline if resolution fails.
    """
    resolver = resolver or make_resolver(timeout)
    start = time.monotonic()

    try:
        answer = await resolver.resolve(hostname, "A")
        addresses = [rdata.address for rdata in answer]
    except dns.resolver.NXDOMAIN:
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error="Domain not found")
    except dns.resolver.NoAnswer:
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error="No A records found")
    except dns.exception.Timeout:
        return CheckResult(DeviceStatus.OFFLINE, error="DNS lookup timeout")
    except dns.resolver.NoNameservers:
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error="DNS server failure")
    except dns.exception.DNSException as e:
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error=str(e))

    response_time = _elapsed_ms(start)
    if not addresses:
        return CheckResult(DeviceStatus.OFFLINE, response_time, error="No A records found")

    logger.debug(f"DNS {hostname}: resolved to {', '.join(addresses)} ({response_time}ms)")

    if expected_ip and expected_ip not in addresses:
        logger.debug(f"DNS {hostname}: expected {expected_ip}, got {', '.join(addresses)}")
        return CheckResult(
            DeviceStatus.DEGRADED,
            response_time,
            error=f"Expected {expected_ip}, got {', '.join(addresses)}",
        )

    return CheckResult(DeviceStatus.ONLINE, response_time)


# ============================================================================
# TLS certificate
# ============================================================================

def _inspection_context() -> ssl.SSLContext:
    # Verification is off so expired and self-signed certificates can be read.
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def describe_certificate(cert: x509.Certificate) -> tuple[datetime, str, str]:
    """Return (expiry, issuer, subject) for a certificate."""
    expiry = cert.not_valid_after_utc
    issuer = cert.issuer.rfc4514_string()
    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    subject = str(common_names[0].value) if common_names else cert.subject.rfc4514_string()
    return expiry, issuer, subject


def status_for_expiry(days_until_expiry: int, warn_days: int) -> DeviceStatus:
    if days_until_expiry < 0:
        return DeviceStatus.OFFLINE
    if days_until_expiry <= warn_days:
        return DeviceStatus.DEGRADED
    return DeviceStatus.ONLINE


async def check_ssl(
    hostname: str,
    port: int = 443,
    warn_days: int = SSL_WARN_DAYS,
    timeout: float = CHECK_TIMEOUT,
) -> CheckResult:
    """Handshake with hostname:port and grade its certificate expiry."""
    start = time.monotonic()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(
                hostname, port, ssl=_inspection_context(), server_hostname=hostname
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.debug(f"SSL {hostname}:{port}: timeout")
        return CheckResult(DeviceStatus.OFFLINE, error="Connection timeout")
    except (OSError, ssl.SSLError) as e:
        logger.debug(f"SSL {hostname}:{port}: error - {e}")
        return CheckResult(DeviceStatus.OFFLINE, _elapsed_ms(start), error=str(e))

    response_time = _elapsed_ms(start)
    try:
        ssl_object = writer.get_extra_info("ssl_object")
        der = ssl_object.getpeercert(binary_form=True) if ssl_object else None
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError):
            pass

    if not der:
        return CheckResult(DeviceStatus.OFFLINE, response_time, error="No certificate presented")

    try:
        expiry, issuer, subject = describe_certificate(x509.load_der_x509_certificate(der))
    except ValueError as e:
        return CheckResult(DeviceStatus.OFFLINE, response_time, error=f"Unreadable certificate: {e}")

    days_until_expiry = (expiry - datetime.now(timezone.utc)).days
    status = status_for_expiry(days_until_expiry, warn_days)
    logger.debug(f"SSL {hostname}:{port}: {status.value}, expires in {days_until_expiry} days")

    return CheckResult(
        status,
        response_time,
        error="Certificate expired" if days_until_expiry < 0 else None,
        ssl_expiry_at=expiry.isoformat().replace("+00:00", "Z"),
        ssl_issuer=issuer,
        ssl_subject=subject,
    )
