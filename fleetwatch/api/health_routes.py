"""API routes for the fleet health engine.

Endpoints:
  POST /api/health/scan       -> run a fleet scan now
  GET  /api/health/summary    -> status counts + last scan
  GET  /api/health/incidents  -> open + recent incidents
  GET  /api/health/stream     -> SSE stream of reports as sites finish
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from fleetwatch.health.engine import HealthReport
from fleetwatch.health.scanner import ScanError, summarize

logger = logging.getLogger(__name__)

health_router = APIRouter(prefix="/health", tags=["health"])

# ── SSE subscriber list (in-memory) ──────────────────────────────────────────

_sse_queues: list[asyncio.Queue[dict[str, Any]]] = []


def broadcast_report(report: HealthReport) -> None:
    """Push a finished site report to all SSE subscribers."""
    data = report.to_dict()
    for q in _sse_queues:
        try:
            q.put_nowait(data)
        except asyncio.QueueFull:
            pass  # slow consumer, drop


# ── Endpoints ────────────────────────────────────────────────────────────────


@health_router.post("/scan")
async def trigger_scan(request: Request) -> dict[str, Any]:
    """Scan every website now and return the per-site reports."""
    scheduler = request.app.state.scan_scheduler
    try:
        reports = await scheduler.run_now()
    except ScanError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "summary": summarize(reports),
        "reports": [r.to_dict() for r in reports.values()],
    }


@health_router.get("/summary")
def health_summary(request: Request) -> dict[str, Any]:
    """Sites per status, open incidents and the outcome of the last scan."""
    store = request.app.state.site_store
    scheduler = request.app.state.scan_scheduler
    open_incidents = store.get_open_incidents()
    return {
        "statuses": store.status_counts(),
        "open_incidents": len(open_incidents),
        "last_scan_at": scheduler.last_run_at.isoformat() if scheduler.last_run_at else None,
        "last_scan": summarize(scheduler.last_reports) if scheduler.last_reports else None,
        "last_error": scheduler.last_error,
    }


@health_router.get("/incidents")
def list_incidents(
    site_id: str | None = None, limit: int = 50, request: Request = None,
) -> dict[str, Any]:
    """Get incidents (open + resolved)."""
    store = request.app.state.site_store
    return {
        "incidents": store.get_incidents(site_id, limit),
        "open": store.get_open_incidents(),
    }


# ── SSE stream ───────────────────────────────────────────────────────────────


@health_router.get("/stream")
async def health_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of site reports as scans progress."""
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=100)
    _sse_queues.append(queue)

    async def event_generator():
        try:
            store = request.app.state.site_store
            yield f"event: init\ndata: {json.dumps(store.list_sites())}\n\n"

            while True:
                if await request.is_disconnected():
                    break
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=30)
                    yield f"event: report\ndata: {json.dumps(data)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            _sse_queues.remove(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
