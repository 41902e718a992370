"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from fleetwatch.health.engine import CertificateResult, HealthStatus, ProbeResult
from fleetwatch.sites.store import MonitoredSite, PersistenceWriteError, SiteStore


class FakeSiteStore:
    """In-memory stand-in for the persistence layer."""

    def __init__(
        self,
        sites: list[MonitoredSite],
        fail_writes_for: set[str] | None = None,
        fail_list: bool = False,
    ) -> None:
        self.sites = sites
        self.fail_writes_for = fail_writes_for or set()
        self.fail_list = fail_list
        self.updates: dict[str, tuple[HealthStatus, datetime, int | None]] = {}
        self.messages: dict[str, str] = {}
        self.write_count = 0

    def list_monitored_sites(self) -> list[MonitoredSite]:
        if self.fail_list:
            raise RuntimeError("database unavailable")
        return list(self.sites)

    def update_site_health(
        self,
        site_id: str,
        status: HealthStatus,
        checked_at: datetime,
        days_until_expiry: int | None = None,
        message: str = "",
    ) -> None:
        self.write_count += 1
        if site_id in self.fail_writes_for:
            raise PersistenceWriteError(f"disk full while writing {site_id}")
        self.updates[site_id] = (status, checked_at, days_until_expiry)
        self.messages[site_id] = message


def make_prober(results: dict[str, ProbeResult | Exception | None], delay: float = 0.0):
    """Fake probe: ``None`` hangs forever, an exception is raised, a result is returned."""

    async def prober(url: str, timeout: float, client=None) -> ProbeResult:
        outcome = results[url]
        if outcome is None:
            await asyncio.sleep(3600)
        if delay:
            await asyncio.sleep(delay)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return prober


def make_inspector(results: dict[str, CertificateResult | Exception | None], delay: float = 0.0):
    """Fake certificate inspector with the same conventions as ``make_prober``."""

    async def inspector(url: str, timeout: float) -> CertificateResult:
        outcome = results[url]
        if outcome is None:
            await asyncio.sleep(3600)
        if delay:
            await asyncio.sleep(delay)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return inspector


@pytest.fixture
def store(tmp_path: Path) -> SiteStore:
    """SiteStore backed by a temp SQLite file."""
    s = SiteStore(db_path=tmp_path / "test_fleetwatch.db")
    yield s
    s.close()
