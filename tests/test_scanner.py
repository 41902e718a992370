"""Tests for the fleet scanner: fan-out, timeouts and per-site isolation."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conftest import FakeSiteStore, make_inspector, make_prober
from fleetwatch.health.engine import (
    CertificateFailure,
    CertificateResult,
    HealthReport,
    HealthStatus,
    ProbeFailure,
    ProbeResult,
)
from fleetwatch.health.scanner import FleetScanner, ScanError, run_fleet_scan, summarize
from fleetwatch.sites.store import MonitoredSite, SiteStore

OK = ProbeResult(status_code=200, message="HTTP 200")
GOOD_CERT = CertificateResult(days_until_expiry=45, message="Certificate expires in 45 days")


def _sites(n: int) -> list[MonitoredSite]:
    return [MonitoredSite(id=f"s{i}", url=f"https://site{i}.example.com") for i in range(n)]


def _scanner(store, probes, certs, **kwargs) -> FleetScanner:
    kwargs.setdefault("timeout", 1.0)
    kwargs.setdefault("max_concurrency", 10)
    kwargs.setdefault("expiry_warning_days", 30)
    return FleetScanner(
        store,
        prober=make_prober(probes),
        inspector=make_inspector(certs),
        **kwargs,
    )


class TestFleetScanner:
    def test_every_site_reported_and_persisted(self) -> None:
        sites = _sites(4)
        probes = {
            sites[0].url: OK,
            sites[1].url: ProbeResult(status_code=503),
            sites[2].url: ProbeResult(failure=ProbeFailure.CONNECTION_ERROR),
            sites[3].url: OK,
        }
        certs = {
            sites[0].url: GOOD_CERT,
            sites[1].url: GOOD_CERT,
            sites[2].url: GOOD_CERT,
            sites[3].url: CertificateResult(days_until_expiry=10),
        }
        store = FakeSiteStore(sites)

        reports = asyncio.run(_scanner(store, probes, certs).run())

        assert set(reports) == {"s0", "s1", "s2", "s3"}
        assert reports["s0"].status == HealthStatus.RUNNING
        assert reports["s1"].status == HealthStatus.PROBLEMATIC
        assert reports["s2"].status == HealthStatus.STOPPED
        assert reports["s3"].status == HealthStatus.PROBLEMATIC
        assert reports["s3"].days_until_expiry == 10
        assert all(r.persisted for r in reports.values())
        assert store.write_count == 4
        assert store.updates["s2"][0] == HealthStatus.STOPPED
        assert store.updates["s0"][2] == 45

    def test_hanging_probe_does_not_stall_the_fleet(self) -> None:
        sites = _sites(5)
        probes = {s.url: OK for s in sites}
        probes[sites[2].url] = None  # never returns
        certs = {s.url: GOOD_CERT for s in sites}
        store = FakeSiteStore(sites)

        t0 = time.perf_counter()
        reports = asyncio.run(_scanner(store, probes, certs, timeout=0.1).run())
        elapsed = time.perf_counter() - t0

        assert len(reports) == 5
        assert reports["s2"].status == HealthStatus.STOPPED
        assert reports["s2"].probe.failure == ProbeFailure.TIMEOUT
        assert all(reports[f"s{i}"].status == HealthStatus.RUNNING for i in (0, 1, 3, 4))
        assert elapsed < 3.0

    def test_all_hanging_sites_time_out_in_parallel(self) -> None:
        sites = _sites(5)
        probes = {s.url: None for s in sites}
        certs = {s.url: None for s in sites}
        store = FakeSiteStore(sites)

        t0 = time.perf_counter()
        reports = asyncio.run(_scanner(store, probes, certs, timeout=0.1, max_concurrency=5).run())
        elapsed = time.perf_counter() - t0

        # Sequential scanning would take 5 x (timeout + grace).
        assert elapsed < 3.0
        assert {r.status for r in reports.values()} == {HealthStatus.STOPPED}
        assert all(r.certificate.failure == CertificateFailure.TIMEOUT for r in reports.values())

    def test_probe_and_certificate_run_concurrently(self) -> None:
        sites = _sites(1)
        store = FakeSiteStore(sites)
        scanner = FleetScanner(
            store,
            timeout=2.0,
            prober=make_prober({sites[0].url: OK}, delay=0.3),
            inspector=make_inspector({sites[0].url: GOOD_CERT}, delay=0.3),
        )

        t0 = time.perf_counter()
        reports = asyncio.run(scanner.run())
        elapsed = time.perf_counter() - t0

        assert reports["s0"].status == HealthStatus.RUNNING
        assert elapsed < 0.55

    def test_concurrency_is_bounded(self) -> None:
        sites = _sites(8)
        in_flight = 0
        peak = 0

        async def prober(url, timeout, client=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return OK

        scanner = FleetScanner(
            FakeSiteStore(sites),
            timeout=1.0,
            max_concurrency=3,
            prober=prober,
            inspector=make_inspector({s.url: GOOD_CERT for s in sites}),
        )
        reports = asyncio.run(scanner.run())

        assert len(reports) == 8
        assert peak <= 3

    def test_probe_exception_is_isolated(self) -> None:
        sites = _sites(3)
        probes = {s.url: OK for s in sites}
        probes[sites[1].url] = RuntimeError("boom")
        certs = {s.url: GOOD_CERT for s in sites}

        reports = asyncio.run(_scanner(FakeSiteStore(sites), probes, certs).run())

        assert reports["s1"].status == HealthStatus.STOPPED
        assert "boom" in reports["s1"].probe.message
        assert reports["s0"].status == HealthStatus.RUNNING
        assert reports["s2"].status == HealthStatus.RUNNING

    def test_inspector_exception_is_isolated(self) -> None:
        sites = _sites(2)
        probes = {s.url: OK for s in sites}
        certs = {sites[0].url: ValueError("bad cert"), sites[1].url: GOOD_CERT}

        reports = asyncio.run(_scanner(FakeSiteStore(sites), probes, certs).run())

        assert reports["s0"].status == HealthStatus.PROBLEMATIC
        assert reports["s0"].certificate.failure == CertificateFailure.HANDSHAKE_ERROR
        assert reports["s1"].status == HealthStatus.RUNNING

    def test_write_failure_for_one_site_keeps_the_others(self) -> None:
        sites = _sites(3)
        probes = {s.url: OK for s in sites}
        probes[sites[0].url] = ProbeResult(status_code=500)
        certs = {s.url: GOOD_CERT for s in sites}
        store = FakeSiteStore(sites, fail_writes_for={"s1"})

        reports = asyncio.run(_scanner(store, probes, certs).run())

        assert len(reports) == 3
        assert not reports["s1"].persisted
        assert "disk full" in reports["s1"].error
        assert reports["s1"].status == HealthStatus.RUNNING
        assert reports["s0"].persisted and reports["s0"].status == HealthStatus.PROBLEMATIC
        assert reports["s2"].persisted and reports["s2"].status == HealthStatus.RUNNING
        assert set(store.updates) == {"s0", "s2"}

    def test_list_failure_is_fatal(self) -> None:
        store = FakeSiteStore(_sites(2), fail_list=True)
        with pytest.raises(ScanError):
            asyncio.run(_scanner(store, {}, {}).run())

    def test_empty_fleet(self) -> None:
        assert asyncio.run(_scanner(FakeSiteStore([]), {}, {}).run()) == {}

    def test_on_report_callback(self) -> None:
        sites = _sites(3)
        seen: list[HealthReport] = []
        scanner = _scanner(
            FakeSiteStore(sites),
            {s.url: OK for s in sites},
            {s.url: GOOD_CERT for s in sites},
            on_report=seen.append,
        )
        asyncio.run(scanner.run())
        assert sorted(r.site_id for r in seen) == ["s0", "s1", "s2"]

    def test_failing_callback_does_not_break_the_scan(self) -> None:
        sites = _sites(2)

        def explode(report: HealthReport) -> None:
            raise RuntimeError("subscriber gone")

        scanner = _scanner(
            FakeSiteStore(sites),
            {s.url: OK for s in sites},
            {s.url: GOOD_CERT for s in sites},
            on_report=explode,
        )
        reports = asyncio.run(scanner.run())
        assert len(reports) == 2
        assert all(r.persisted for r in reports.values())

    def test_expiry_window_is_configurable(self) -> None:
        sites = _sites(1)
        scanner = _scanner(
            FakeSiteStore(sites), {sites[0].url: OK}, {sites[0].url: GOOD_CERT},
            expiry_warning_days=60,
        )
        reports = asyncio.run(scanner.run())
        assert reports["s0"].status == HealthStatus.PROBLEMATIC

    def test_http_site_skips_certificate_check(self) -> None:
        sites = [MonitoredSite(id="plain", url="http://plain.example.com")]
        scanner = FleetScanner(FakeSiteStore(sites), timeout=1.0, prober=make_prober({sites[0].url: OK}))
        reports = asyncio.run(scanner.run())
        assert reports["plain"].certificate.skipped
        assert reports["plain"].status == HealthStatus.RUNNING


class TestScanWithSiteStore:
    def test_status_written_to_database(self, store: SiteStore) -> None:
        a = store.add_site("Alpha", "https://alpha.example.com")
        b = store.add_site("Beta", "https://beta.example.com")
        scanner = _scanner(
            store,
            {a.url: OK, b.url: ProbeResult(failure=ProbeFailure.TIMEOUT, message="Request timed out")},
            {a.url: GOOD_CERT, b.url: GOOD_CERT},
        )

        asyncio.run(scanner.run())

        alpha = store.get_site(a.id)
        beta = store.get_site(b.id)
        assert alpha["status"] == "RUNNING"
        assert alpha["ssl_expiration_days"] == 45
        assert alpha["last_health_check"]
        assert beta["status"] == "STOPPED"
        assert store.get_history(b.id)[0]["message"] == "Request timed out"


class TestRunFleetScan:
    def test_overrides_and_defaults(self) -> None:
        sites = _sites(2)
        store = FakeSiteStore(sites)
        probes = make_prober({s.url: OK for s in sites})
        certs = make_inspector({s.url: GOOD_CERT for s in sites})

        with patch("fleetwatch.health.scanner.probe", probes), \
                patch("fleetwatch.health.scanner.inspect_certificate", certs):
            relaxed = asyncio.run(run_fleet_scan(store))
            strict = asyncio.run(run_fleet_scan(store, timeout=0.5, max_concurrency=1, expiry_warning_days=60))

        assert {r.status for r in relaxed.values()} == {HealthStatus.RUNNING}
        assert {r.status for r in strict.values()} == {HealthStatus.PROBLEMATIC}


class TestSummarize:
    def test_counts(self) -> None:
        reports = {
            "a": HealthReport(site_id="a", url="u", status=HealthStatus.RUNNING, persisted=True),
            "b": HealthReport(site_id="b", url="u", status=HealthStatus.STOPPED, persisted=False),
            "c": HealthReport(site_id="c", url="u", status=HealthStatus.STOPPED, persisted=True),
        }
        assert summarize(reports) == {
            "RUNNING": 1, "PROBLEMATIC": 0, "STOPPED": 2, "write_failures": 1,
        }


class TestScannerNetworkEdges:
    def test_slow_tls_close_keeps_the_certificate_reading(self) -> None:
        async def never_closes() -> None:
            await asyncio.sleep(3600)

        not_after = (datetime.now(timezone.utc) + timedelta(days=89, hours=12)).strftime("%b %d %H:%M:%S %Y GMT")
        writer = MagicMock()
        writer.get_extra_info.return_value = {"notAfter": not_after}
        writer.wait_closed = never_closes
        opener = AsyncMock(return_value=(MagicMock(), writer))
        sites = _sites(1)
        scanner = FleetScanner(FakeSiteStore(sites), timeout=0.5, prober=make_prober({sites[0].url: OK}))

        with patch("fleetwatch.health.engine.asyncio.open_connection", opener):
            reports = asyncio.run(scanner.run())

        assert reports["s0"].certificate.failure is None
        assert reports["s0"].days_until_expiry == 90
        assert reports["s0"].status == HealthStatus.RUNNING

    def test_connection_pool_matches_concurrency(self) -> None:
        sites = _sites(2)
        scanner = _scanner(
            FakeSiteStore(sites),
            {s.url: OK for s in sites},
            {s.url: GOOD_CERT for s in sites},
            max_concurrency=150,
        )
        with patch("fleetwatch.health.scanner.httpx.AsyncClient", wraps=httpx.AsyncClient) as client_cls:
            asyncio.run(scanner.run())
        assert client_cls.call_args.kwargs["limits"].max_connections == 150

    def test_error_status_stores_the_http_message(self) -> None:
        sites = _sites(1)
        store = FakeSiteStore(sites)
        scanner = _scanner(
            store,
            {sites[0].url: ProbeResult(status_code=503, message="HTTP 503")},
            {sites[0].url: GOOD_CERT},
        )
        asyncio.run(scanner.run())
        assert store.messages["s0"] == "HTTP 503"
