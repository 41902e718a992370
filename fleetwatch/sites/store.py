"""SQLite-backed website records, the persistence side of the health engine.

The fleet scanner only needs ``list_monitored_sites`` and ``update_site_health``.
Everything else here (history, incidents, CRUD) serves the API and CLI.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from fleetwatch.health.engine import HealthStatus

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent.parent / "data" / "fleetwatch.db"


class PersistenceError(Exception):
    """Raised when the site database cannot be read or written."""


class PersistenceWriteError(PersistenceError):
    """Raised when a health update for one site could not be stored."""


@dataclass(frozen=True)
class MonitoredSite:
    """The slice of a website record the fleet scanner works with."""

    id: str
    url: str
    name: str = ""


def validate_url(url: str) -> str:
    """Return the stripped URL, or raise ``ValueError`` if it is not absolute http(s)."""
    url = (url or "").strip()
    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise ValueError(f"URL must be an absolute http(s) URL: {url!r}")
    return url


class SiteStore:
    """Website records, health check history and incidents in one SQLite file."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path else DB_PATH
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS websites (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT NOT NULL,
                host_provider TEXT NOT NULL DEFAULT '',
                technologies TEXT NOT NULL DEFAULT '[]',
                notes TEXT NOT NULL DEFAULT '',
                status TEXT,
                last_health_check TEXT,
                ssl_expiration_days INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS health_checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                website_id TEXT NOT NULL,
                status TEXT NOT NULL,
                checked_at TEXT NOT NULL,
                days_until_expiry INTEGER,
                message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_checks_website
                ON health_checks (website_id, checked_at DESC);

            CREATE TABLE IF NOT EXISTS incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                website_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                from_status TEXT NOT NULL,
                to_status TEXT NOT NULL,
                message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_incidents_website
                ON incidents (website_id, started_at DESC);
        """)
        conn.commit()

    # ── Health engine contract ────────────────────────────────────────────

    def list_monitored_sites(self) -> list[MonitoredSite]:
        """Every website record, as the scanner sees it."""
        try:
            rows = self._get_conn().execute(
                "SELECT id, url, name FROM websites ORDER BY created_at, rowid",
            ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not list websites: {e}") from e
        return [MonitoredSite(id=r["id"], url=r["url"], name=r["name"]) for r in rows]

    def update_site_health(
        self,
        site_id: str,
        status: HealthStatus,
        checked_at: datetime,
        days_until_expiry: int | None = None,
        message: str = "",
    ) -> None:
        """Store the latest status of one site and open/close incidents on transitions."""
        ts = checked_at.isoformat()
        with self._lock:
            conn = self._get_conn()
            try:
                prev_row = conn.execute(
                    "SELECT status FROM websites WHERE id = ?", (site_id,),
                ).fetchone()
                if prev_row is None:
                    raise PersistenceWriteError(f"Unknown website: {site_id}")
                prev_status = prev_row["status"]

                conn.execute(
                    "UPDATE websites SET status = ?, last_health_check = ?, ssl_expiration_days = ? "
                    "WHERE id = ?",
                    (status.value, ts, days_until_expiry, site_id),
                )
                conn.execute(
                    "INSERT INTO health_checks (website_id, status, checked_at, days_until_expiry, message) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (site_id, status.value, ts, days_until_expiry, message),
                )

                if prev_status and prev_status != status.value:
                    if prev_status == HealthStatus.RUNNING.value:
                        conn.execute(
                            "INSERT INTO incidents (website_id, started_at, from_status, to_status, message) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (site_id, ts, prev_status, status.value, message),
                        )
                    elif status == HealthStatus.RUNNING:
                        conn.execute(
                            "UPDATE incidents SET ended_at = ? "
                            "WHERE website_id = ? AND ended_at IS NULL",
                            (ts, site_id),
                        )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceWriteError(f"Could not store health for {site_id}: {e}") from e

    # ── Website records ───────────────────────────────────────────────────

    def add_site(
        self,
        name: str,
        url: str,
        host_provider: str = "",
        technologies: list[str] | None = None,
        notes: str = "",
        site_id: str | None = None,
    ) -> MonitoredSite:
        """Create a website record. Raises ``ValueError`` on bad input or a duplicate id."""
        name = (name or "").strip()
        if not name:
            raise ValueError("Website 'name' is required")
        url = validate_url(url)
        site_id = (site_id or "").strip() or uuid.uuid4().hex[:12]

        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    "INSERT INTO websites (id, name, url, host_provider, technologies, notes, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        site_id, name, url, host_provider or "",
                        json.dumps(technologies or []), notes or "",
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise ValueError(f"Website '{site_id}' already exists") from e

        logger.info("Added website %s (%s)", site_id, url)
        return MonitoredSite(id=site_id, url=url, name=name)

    def get_site(self, site_id: str) -> dict[str, Any] | None:
        row = self._get_conn().execute(
            "SELECT * FROM websites WHERE id = ?", (site_id,),
        ).fetchone()
        return _site_row(row) if row else None

    def list_sites(self) -> list[dict[str, Any]]:
        """All website records, newest first."""
        rows = self._get_conn().execute(
            "SELECT * FROM websites ORDER BY created_at DESC, rowid DESC",
        ).fetchall()
        return [_site_row(r) for r in rows]

    def delete_site(self, site_id: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute("DELETE FROM websites WHERE id = ?", (site_id,))
            conn.execute("DELETE FROM health_checks WHERE website_id = ?", (site_id,))
            conn.execute("DELETE FROM incidents WHERE website_id = ?", (site_id,))
            conn.commit()
        return cursor.rowcount > 0

    def status_counts(self) -> dict[str, int]:
        """Number of websites per last known status ("UNKNOWN" if never checked)."""
        rows = self._get_conn().execute(
            "SELECT COALESCE(status, 'UNKNOWN') AS status, COUNT(*) AS n "
            "FROM websites GROUP BY COALESCE(status, 'UNKNOWN')",
        ).fetchall()
        return {r["status"]: r["n"] for r in rows}

    # ── History + incidents ───────────────────────────────────────────────

    def get_history(self, site_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Recent checks for a site, newest first."""
        rows = self._get_conn().execute(
            "SELECT * FROM health_checks WHERE website_id = ? "
            "ORDER BY checked_at DESC, id DESC LIMIT ?",
            (site_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_open_incidents(self) -> list[dict[str, Any]]:
        rows = self._get_conn().execute(
            "SELECT * FROM incidents WHERE ended_at IS NULL ORDER BY started_at DESC",
        ).fetchall()
        return [dict(r) for r in rows]

    def get_incidents(self, site_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        """Recent incidents, optionally filtered by website."""
        if site_id:
            rows = self._get_conn().execute(
                "SELECT * FROM incidents WHERE website_id = ? ORDER BY started_at DESC LIMIT ?",
                (site_id, limit),
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                "SELECT * FROM incidents ORDER BY started_at DESC LIMIT ?", (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def cleanup_old(self, days: int = 30) -> int:
        """Remove check history older than N days."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute(
                "DELETE FROM health_checks WHERE checked_at < ?", (cutoff,),
            )
            conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


def _site_row(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    try:
        d["technologies"] = json.loads(d.get("technologies") or "[]")
    except json.JSONDecodeError:
        d["technologies"] = []
    return d
