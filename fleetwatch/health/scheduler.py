"""Scan scheduler runs a fleet scan at a fixed interval.

A plain asyncio loop rather than a cron library: one task, one interval.
Scans never overlap; a manual trigger waits for a running scan to finish.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from fleetwatch.health.engine import HealthReport
from fleetwatch.health.scanner import FleetScanner, ScanError

logger = logging.getLogger(__name__)


class ScanScheduler:
    """Periodically calls ``FleetScanner.run()`` and keeps the latest outcome."""

    def __init__(self, scanner: FleetScanner, interval_seconds: int = 3600) -> None:
        self.scanner = scanner
        self.interval = interval_seconds
        self.last_reports: dict[str, HealthReport] = {}
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None
        self._scan_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic loop (no-op when the interval is disabled)."""
        if self._running:
            return
        if self.interval <= 0:
            logger.info("Scan interval disabled, manual scans only")
            return
        self._running = True
        self._task = asyncio.create_task(self._scan_loop(), name="fleet-scan")
        logger.info("Scan scheduler started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Scan scheduler stopped")

    async def run_now(self) -> dict[str, HealthReport]:
        """Run a scan immediately. Raises ``ScanError`` if the site list is unavailable."""
        async with self._scan_lock:
            try:
                reports = await self.scanner.run()
            except ScanError as e:
                self.last_error = str(e)
                raise
            self.last_reports = reports
            self.last_run_at = datetime.now(timezone.utc)
            self.last_error = None
            return reports

    async def _scan_loop(self) -> None:
        while self._running:
            try:
                await self.run_now()
            except asyncio.CancelledError:
                break
            except ScanError as e:
                logger.error("Scheduled scan failed: %s", e)
                await asyncio.sleep(min(self.interval, 60))
                continue
            except Exception:
                logger.exception("Scheduled scan crashed")
                await asyncio.sleep(min(self.interval, 60))
                continue

            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
