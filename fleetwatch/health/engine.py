"""Health check engine: HTTP probe, TLS certificate inspection, status evaluation.

Each check returns a result object instead of raising: an unreachable site is
data for the evaluator, never a fault that stops the fleet scan.
"""

from __future__ import annotations

import asyncio
import logging
import math
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import httpx
from cryptography import x509

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0  # seconds
EXPIRY_WARNING_DAYS = 30
CERT_TIME_FORMAT = "%b %d %H:%M:%S %Y %Z"
# OpenSSL X509_V_ERR_CERT_HAS_EXPIRED
CERT_HAS_EXPIRED = 10

_SECONDS_PER_DAY = 86_400


# ── Models ───────────────────────────────────────────────────────────────────


class HealthStatus(str, Enum):
    RUNNING = "RUNNING"
    PROBLEMATIC = "PROBLEMATIC"
    STOPPED = "STOPPED"


class ProbeFailure(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection-error"
    TLS_ERROR = "tls-error"


class CertificateFailure(str, Enum):
    HANDSHAKE_ERROR = "handshake-error"
    NO_CERTIFICATE = "no-certificate"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one HTTP(S) request: a status code or a failure reason."""

    status_code: int | None = None
    failure: ProbeFailure | None = None
    message: str = ""
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None and self.status_code is not None


@dataclass(frozen=True)
class CertificateResult:
    """Outcome of a TLS certificate inspection.

    ``skipped`` marks a plain-http target where no inspection was attempted,
    which the evaluator treats differently from a failed inspection.
    """

    days_until_expiry: int | None = None
    expires_at: datetime | None = None
    failure: CertificateFailure | None = None
    skipped: bool = False
    message: str = ""

    @classmethod
    def skip(cls) -> CertificateResult:
        return cls(skipped=True, message="Not an https target")

    @property
    def checked(self) -> bool:
        return not self.skipped


@dataclass
class HealthReport:
    """Evaluated status of one site after one scan."""

    site_id: str
    url: str
    status: HealthStatus
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    days_until_expiry: int | None = None
    probe: ProbeResult | None = None
    certificate: CertificateResult | None = None
    persisted: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        probe = self.probe or ProbeResult()
        cert = self.certificate or CertificateResult.skip()
        return {
            "site_id": self.site_id,
            "url": self.url,
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "days_until_expiry": self.days_until_expiry,
            "status_code": probe.status_code,
            "probe_failure": probe.failure.value if probe.failure else None,
            "probe_message": probe.message,
            "latency_ms": probe.latency_ms,
            "certificate_failure": cert.failure.value if cert.failure else None,
            "certificate_skipped": cert.skipped,
            "certificate_message": cert.message,
            "persisted": self.persisted,
            "error": self.error,
        }


# ── Probe ────────────────────────────────────────────────────────────────────


async def probe(
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> ProbeResult:
    """Issue one GET and report the status code without reading the body."""
    t0 = time.perf_counter()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as own_client:
                status_code = await _fetch_status(own_client, url, timeout)
        else:
            status_code = await _fetch_status(client, url, timeout)
    except httpx.TimeoutException:
        return ProbeResult(
            failure=ProbeFailure.TIMEOUT,
            latency_ms=round(timeout * 1000, 1),
            message=f"Request timed out ({timeout}s)",
        )
    except httpx.ConnectError as e:
        latency = (time.perf_counter() - t0) * 1000
        if _is_tls_error(e):
            return ProbeResult(
                failure=ProbeFailure.TLS_ERROR,
                latency_ms=round(latency, 1),
                message=f"TLS handshake failed: {e}",
            )
        return ProbeResult(
            failure=ProbeFailure.CONNECTION_ERROR,
            latency_ms=round(latency, 1),
            message=f"Connection error: {e}",
        )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        latency = (time.perf_counter() - t0) * 1000
        return ProbeResult(
            failure=ProbeFailure.CONNECTION_ERROR,
            latency_ms=round(latency, 1),
            message=f"Error: {type(e).__name__}: {e}",
        )

    latency = (time.perf_counter() - t0) * 1000
    return ProbeResult(
        status_code=status_code,
        latency_ms=round(latency, 1),
        message=f"HTTP {status_code}",
    )


async def _fetch_status(client: httpx.AsyncClient, url: str, timeout: float) -> int:
    # Streaming keeps the body unread; only the status line matters.
    async with client.stream("GET", url, timeout=timeout, follow_redirects=False) as resp:
        return resp.status_code


def _is_tls_error(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


# ── Certificate inspection ───────────────────────────────────────────────────


def parse_cert_time(value: str) -> datetime:
    """Parse a certificate ``notAfter`` string (always GMT) into an aware datetime."""
    return datetime.strptime(value, CERT_TIME_FORMAT).replace(tzinfo=timezone.utc)


def days_until(expires_at: datetime, now: datetime | None = None) -> int:
    """Whole days until ``expires_at``, rounded up. Negative once expired."""
    now = now or datetime.now(timezone.utc)
    return math.ceil((expires_at - now).total_seconds() / _SECONDS_PER_DAY)


async def inspect_certificate(url: str, timeout: float = DEFAULT_TIMEOUT) -> CertificateResult:
    """Open a TLS connection to the URL's host and read the certificate expiry."""
    parts = urlsplit(url)
    if parts.scheme.lower() != "https":
        return CertificateResult.skip()

    hostname = parts.hostname
    if not hostname:
        return CertificateResult(
            failure=CertificateFailure.HANDSHAKE_ERROR,
            message=f"No hostname in URL: {url}",
        )
    try:
        port = parts.port or 443
    except ValueError as e:
        return CertificateResult(
            failure=CertificateFailure.HANDSHAKE_ERROR,
            message=f"Invalid port in URL: {e}",
        )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    writer: asyncio.StreamWriter | None = None
    try:
        ctx = ssl.create_default_context()
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(hostname, port, ssl=ctx, server_hostname=hostname),
            timeout=timeout,
        )
        cert = writer.get_extra_info("peercert")
    except asyncio.TimeoutError:
        return _handshake_timeout(timeout)
    except ssl.SSLCertVerificationError as e:
        if getattr(e, "verify_code", None) == CERT_HAS_EXPIRED:
            return await _inspect_expired(hostname, port, max(deadline - loop.time(), 0.0), timeout)
        return CertificateResult(
            failure=CertificateFailure.HANDSHAKE_ERROR,
            message=f"Certificate verification failed: {getattr(e, 'verify_message', None) or e}",
        )
    except (ssl.SSLError, OSError) as e:
        return CertificateResult(
            failure=CertificateFailure.HANDSHAKE_ERROR,
            message=f"TLS error: {type(e).__name__}: {e}",
        )
    finally:
        if writer is not None:
            _discard(writer)

    not_after = (cert or {}).get("notAfter")
    if not not_after:
        return CertificateResult(
            failure=CertificateFailure.NO_CERTIFICATE,
            message="No certificate returned",
        )
    try:
        expires_at = parse_cert_time(not_after)
    except ValueError:
        return CertificateResult(
            failure=CertificateFailure.NO_CERTIFICATE,
            message=f"Unreadable notAfter: {not_after!r}",
        )

    days_left = days_until(expires_at)
    return CertificateResult(
        days_until_expiry=days_left,
        expires_at=expires_at,
        message=f"Certificate expires in {days_left} days",
    )


async def _inspect_expired(
    hostname: str, port: int, remaining: float, timeout: float,
) -> CertificateResult:
    """Read the expiry of a certificate the verifying handshake rejected as expired.

    Reconnects without verification, takes the DER certificate and parses
    ``notAfter`` with ``cryptography``; the unverified peer dict is empty.
    """
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    writer: asyncio.StreamWriter | None = None
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(hostname, port, ssl=ctx, server_hostname=hostname),
            timeout=remaining,
        )
        ssl_object = writer.get_extra_info("ssl_object")
        der = ssl_object.getpeercert(binary_form=True) if ssl_object is not None else None
    except asyncio.TimeoutError:
        return _handshake_timeout(timeout)
    except (ssl.SSLError, OSError) as e:
        return CertificateResult(
            failure=CertificateFailure.HANDSHAKE_ERROR,
            message=f"Certificate has expired; re-reading it failed: {type(e).__name__}: {e}",
        )
    finally:
        if writer is not None:
            _discard(writer)

    if not der:
        return CertificateResult(
            failure=CertificateFailure.NO_CERTIFICATE,
            message="No certificate returned",
        )
    try:
        expires_at = x509.load_der_x509_certificate(der).not_valid_after_utc
    except ValueError as e:
        return CertificateResult(
            failure=CertificateFailure.NO_CERTIFICATE,
            message=f"Unreadable certificate: {e}",
        )

    days_left = days_until(expires_at)
    return CertificateResult(
        days_until_expiry=days_left,
        expires_at=expires_at,
        message=f"Certificate expired on {expires_at:%Y-%m-%d} ({days_left} days)",
    )


def _handshake_timeout(timeout: float) -> CertificateResult:
    return CertificateResult(
        failure=CertificateFailure.TIMEOUT,
        message=f"TLS handshake timed out ({timeout}s)",
    )


def _discard(writer: asyncio.StreamWriter) -> None:
    # Nothing was written, so the TLS close_notify exchange is skipped.
    writer.transport.abort()


# ── Evaluation ───────────────────────────────────────────────────────────────


def evaluate(
    probe_result: ProbeResult,
    cert_result: CertificateResult,
    expiry_warning_days: int = EXPIRY_WARNING_DAYS,
) -> HealthStatus:
    """Reduce a probe and a certificate result to one status (first match wins).

    1. probe failed                               -> STOPPED
    2. status code outside 2xx/3xx                -> PROBLEMATIC
    3. certificate checked and failed             -> PROBLEMATIC
    4. certificate expires within the warning window -> PROBLEMATIC
    5. otherwise                                  -> RUNNING
    """
    if not probe_result.ok:
        return HealthStatus.STOPPED
    if not 200 <= probe_result.status_code < 400:
        return HealthStatus.PROBLEMATIC
    if cert_result.checked:
        if cert_result.failure is not None or cert_result.days_until_expiry is None:
            return HealthStatus.PROBLEMATIC
        if cert_result.days_until_expiry < expiry_warning_days:
            return HealthStatus.PROBLEMATIC
    return HealthStatus.RUNNING
