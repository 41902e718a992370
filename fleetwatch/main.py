"""Entry point for fleetwatch: API server, one-shot scans and site management."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fleetwatch.config import settings
from fleetwatch.health.engine import HealthReport, HealthStatus
from fleetwatch.health.scanner import ScanError, run_fleet_scan, summarize
from fleetwatch.sites.registry import SiteRegistry
from fleetwatch.sites.store import SiteStore

console = Console()

STATUS_STYLE = {
    HealthStatus.RUNNING: "green",
    HealthStatus.PROBLEMATIC: "yellow",
    HealthStatus.STOPPED: "bold red",
}


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting fleetwatch API server", style="bold green"))
    uvicorn.run(
        "fleetwatch.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def run_scan(timeout: float | None, concurrency: int | None, warn_days: int | None) -> int:
    """Scan the fleet once and print a table of results."""
    store = SiteStore(settings.db_path)
    try:
        with console.status("[bold green]Scanning fleet..."):
            reports = asyncio.run(run_fleet_scan(
                store,
                timeout=timeout,
                max_concurrency=concurrency,
                expiry_warning_days=warn_days,
            ))
    except ScanError as e:
        console.print(f"[bold red]Scan failed:[/bold red] {e}")
        return 1
    finally:
        store.close()

    if not reports:
        console.print("[dim]No monitored sites. Add one with `fleetwatch add NAME URL`.[/dim]")
        return 0

    console.print(_report_table(reports))
    counts = summarize(reports)
    console.print(
        f"\n[dim]running={counts['RUNNING']} problematic={counts['PROBLEMATIC']} "
        f"stopped={counts['STOPPED']} write_failures={counts['write_failures']}[/dim]"
    )
    return 0


def _report_table(reports: dict[str, HealthReport]) -> Table:
    table = Table(title="Fleet health")
    table.add_column("Site")
    table.add_column("URL")
    table.add_column("Status")
    table.add_column("HTTP", justify="right")
    table.add_column("Cert days", justify="right")
    table.add_column("Note")

    for r in sorted(reports.values(), key=lambda r: r.url):
        probe = r.probe
        http = str(probe.status_code) if probe and probe.status_code is not None else "-"
        days = str(r.days_until_expiry) if r.days_until_expiry is not None else "-"
        if r.error:
            note = f"not saved: {r.error}"
        elif probe and not probe.ok:
            note = probe.message
        elif r.certificate and r.certificate.failure:
            note = r.certificate.message
        else:
            note = ""
        style = STATUS_STYLE[r.status]
        table.add_row(r.site_id, r.url, f"[{style}]{r.status.value}[/{style}]", http, days, note)
    return table


def add_site(name: str, url: str) -> int:
    store = SiteStore(settings.db_path)
    try:
        site = store.add_site(name=name, url=url)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    finally:
        store.close()
    console.print(f"Added [bold]{site.name}[/bold] ({site.url}) as {site.id}")
    return 0


def import_sites(path: str) -> int:
    store = SiteStore(settings.db_path)
    try:
        added = SiteRegistry(path).sync(store)
    finally:
        store.close()
    console.print(f"Imported {added} new site(s) from {path}")
    return 0


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="fleetwatch: website fleet health monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server (with the periodic scanner)")

    scan_parser = sub.add_parser("scan", help="Scan every site once and print the results")
    scan_parser.add_argument("--timeout", type=float, default=None, help="Per-call timeout in seconds")
    scan_parser.add_argument("--concurrency", type=int, default=None, help="Sites scanned at once")
    scan_parser.add_argument("--warn-days", type=int, default=None, help="Certificate expiry warning window")

    add_parser = sub.add_parser("add", help="Add a website to monitor")
    add_parser.add_argument("name")
    add_parser.add_argument("url")

    import_parser = sub.add_parser("import", help="Import sites from a YAML registry file")
    import_parser.add_argument("file", nargs="?", default=settings.sites_file)

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "scan":
        sys.exit(run_scan(args.timeout, args.concurrency, args.warn_days))
    elif args.command == "add":
        sys.exit(add_site(args.name, args.url))
    elif args.command == "import":
        sys.exit(import_sites(args.file))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
