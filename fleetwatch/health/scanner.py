"""Fleet scanner checks every monitored site concurrently and writes back its status.

Per site, the HTTP probe and the certificate inspection run side by side;
across sites, a semaphore caps how many sites are in flight. One site's
failure (network, unexpected exception, or storage write) never aborts the
others: every listed site gets exactly one HealthReport.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from fleetwatch.config import settings
from fleetwatch.health.engine import (
    CertificateFailure,
    CertificateResult,
    HealthReport,
    HealthStatus,
    ProbeFailure,
    ProbeResult,
    evaluate,
    inspect_certificate,
    probe,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 20
# Extra time granted on top of a call's own timeout before the scanner gives up on it.
DEADLINE_GRACE = 1.0

Prober = Callable[..., Awaitable[ProbeResult]]
Inspector = Callable[..., Awaitable[CertificateResult]]


class SiteRepository(Protocol):
    """What the scanner needs from the persistence layer."""

    def list_monitored_sites(self) -> list[Any]: ...

    def update_site_health(
        self,
        site_id: str,
        status: HealthStatus,
        checked_at: datetime,
        days_until_expiry: int | None = None,
        message: str = "",
    ) -> None: ...


class ScanError(Exception):
    """Raised when a scan cannot start because the site list is unavailable."""


class FleetScanner:
    """Runs one health scan over every site the repository knows about."""

    def __init__(
        self,
        store: SiteRepository,
        timeout: float | None = None,
        max_concurrency: int | None = None,
        expiry_warning_days: int | None = None,
        prober: Prober | None = None,
        inspector: Inspector | None = None,
        on_report: Callable[[HealthReport], Any] | None = None,
    ) -> None:
        self.store = store
        self.timeout = timeout if timeout is not None else settings.probe_timeout
        self.max_concurrency = max(1, max_concurrency or settings.max_concurrency or DEFAULT_MAX_CONCURRENCY)
        self.expiry_warning_days = (
            expiry_warning_days if expiry_warning_days is not None else settings.expiry_warning_days
        )
        self.prober = prober or probe
        self.inspector = inspector or inspect_certificate
        self.on_report = on_report

    async def run(self) -> dict[str, HealthReport]:
        """Scan the whole fleet once. Only a failure to list sites raises."""
        loop = asyncio.get_running_loop()
        try:
            sites = await loop.run_in_executor(None, self.store.list_monitored_sites)
        except Exception as e:
            logger.exception("Could not list monitored sites")
            raise ScanError(f"Could not list monitored sites: {e}") from e

        if not sites:
            logger.info("No monitored sites, nothing to scan")
            return {}

        semaphore = asyncio.Semaphore(self.max_concurrency)
        write_lock = asyncio.Lock()
        t0 = loop.time()

        limits = httpx.Limits(max_connections=self.max_concurrency)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False, limits=limits) as client:
            reports = await asyncio.gather(
                *(self._scan_site(site, client, semaphore, write_lock) for site in sites),
            )

        results = {r.site_id: r for r in reports}
        counts = summarize(results)
        logger.info(
            "Fleet scan finished: %d sites in %.1fs (running=%d problematic=%d stopped=%d write_failures=%d)",
            len(results), loop.time() - t0,
            counts[HealthStatus.RUNNING.value], counts[HealthStatus.PROBLEMATIC.value],
            counts[HealthStatus.STOPPED.value], counts["write_failures"],
        )
        return results

    async def _scan_site(
        self,
        site: Any,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        write_lock: asyncio.Lock,
    ) -> HealthReport:
        async with semaphore:
            probe_result, cert_result = await asyncio.gather(
                self._run_probe(site.url, client),
                self._run_inspection(site.url),
            )

        status = evaluate(probe_result, cert_result, self.expiry_warning_days)
        report = HealthReport(
            site_id=site.id,
            url=site.url,
            status=status,
            checked_at=datetime.now(timezone.utc),
            days_until_expiry=cert_result.days_until_expiry,
            probe=probe_result,
            certificate=cert_result,
        )

        message = _status_message(probe_result, cert_result)
        loop = asyncio.get_running_loop()
        try:
            async with write_lock:
                await loop.run_in_executor(
                    None,
                    lambda: self.store.update_site_health(
                        report.site_id, report.status, report.checked_at,
                        report.days_until_expiry, message,
                    ),
                )
            report.persisted = True
        except Exception as e:
            report.error = f"{type(e).__name__}: {e}"
            logger.warning("Could not store health for %s (%s): %s", site.id, site.url, e)

        logger.debug("Site %s: %s (%s)", site.id, status.value, message)

        if self.on_report:
            try:
                self.on_report(report)
            except Exception:
                logger.exception("Report callback error")

        return report

    async def _run_probe(self, url: str, client: httpx.AsyncClient) -> ProbeResult:
        try:
            return await asyncio.wait_for(
                self.prober(url, self.timeout, client=client),
                timeout=self.timeout + DEADLINE_GRACE,
            )
        except asyncio.TimeoutError:
            return ProbeResult(
                failure=ProbeFailure.TIMEOUT,
                latency_ms=round(self.timeout * 1000, 1),
                message=f"Probe exceeded its deadline ({self.timeout}s)",
            )
        except Exception as e:
            logger.warning("Probe raised for %s: %s", url, e)
            return ProbeResult(
                failure=ProbeFailure.CONNECTION_ERROR,
                message=f"Probe error: {type(e).__name__}: {e}",
            )

    async def _run_inspection(self, url: str) -> CertificateResult:
        try:
            return await asyncio.wait_for(
                self.inspector(url, self.timeout),
                timeout=self.timeout + DEADLINE_GRACE,
            )
        except asyncio.TimeoutError:
            return CertificateResult(
                failure=CertificateFailure.TIMEOUT,
                message=f"Certificate check exceeded its deadline ({self.timeout}s)",
            )
        except Exception as e:
            logger.warning("Certificate check raised for %s: %s", url, e)
            return CertificateResult(
                failure=CertificateFailure.HANDSHAKE_ERROR,
                message=f"Certificate check error: {type(e).__name__}: {e}",
            )


def _status_message(probe_result: ProbeResult, cert_result: CertificateResult) -> str:
    # The probe outcome wins unless it was a healthy response.
    healthy = probe_result.ok and 200 <= probe_result.status_code < 400
    if healthy and cert_result.checked:
        return cert_result.message or probe_result.message
    return probe_result.message


def summarize(reports: dict[str, HealthReport]) -> dict[str, int]:
    """Count reports per status, plus how many could not be stored."""
    counts = {s.value: 0 for s in HealthStatus}
    counts["write_failures"] = 0
    for r in reports.values():
        counts[r.status.value] += 1
        if not r.persisted:
            counts["write_failures"] += 1
    return counts


async def run_fleet_scan(
    store: SiteRepository | None = None,
    *,
    timeout: float | None = None,
    max_concurrency: int | None = None,
    expiry_warning_days: int | None = None,
) -> dict[str, HealthReport]:
    """Scan every monitored site once, using ``settings`` for anything not given."""
    options = {
        "timeout": timeout,
        "max_concurrency": max_concurrency,
        "expiry_warning_days": expiry_warning_days,
    }
    if store is not None:
        return await FleetScanner(store, **options).run()

    from fleetwatch.sites.store import SiteStore

    own_store = SiteStore(settings.db_path)
    try:
        return await FleetScanner(own_store, **options).run()
    finally:
        own_store.close()
