"""Website record API routes: list, create, inspect and remove monitored sites."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from fleetwatch.sites.store import SiteStore

logger = logging.getLogger(__name__)

website_router = APIRouter(prefix="/websites", tags=["websites"])


# ── Request models ───────────────────────────────────────────────────────

class CreateWebsiteBody(BaseModel):
    # Optional here so a missing field is a 400 with a readable message, not a 422.
    name: str = ""
    url: str = ""
    host_provider: str = ""
    technologies: list[str] = []
    notes: str = ""
    id: str | None = None


# ── Helper ───────────────────────────────────────────────────────────────

def _get_store(request: Request) -> SiteStore:
    return request.app.state.site_store  # type: ignore[no-any-return]


# ── Endpoints ────────────────────────────────────────────────────────────

@website_router.get("")
def list_websites(request: Request) -> list[dict[str, Any]]:
    """All websites with their last known status, newest first."""
    return _get_store(request).list_sites()


@website_router.post("", status_code=201)
def create_website(body: CreateWebsiteBody, request: Request) -> dict[str, Any]:
    if not body.name.strip() or not body.url.strip():
        raise HTTPException(status_code=400, detail="Name and URL are required")

    store = _get_store(request)
    try:
        site = store.add_site(
            name=body.name,
            url=body.url,
            host_provider=body.host_provider,
            technologies=body.technologies,
            notes=body.notes,
            site_id=body.id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return store.get_site(site.id) or {}


@website_router.get("/{site_id}")
def get_website(site_id: str, request: Request) -> dict[str, Any]:
    """Website detail with recent check history and incidents."""
    store = _get_store(request)
    site = store.get_site(site_id)
    if not site:
        raise HTTPException(status_code=404, detail=f"Website not found: {site_id}")
    site["history"] = store.get_history(site_id, limit=50)
    site["incidents"] = store.get_incidents(site_id, limit=10)
    return site


@website_router.delete("/{site_id}")
def delete_website(site_id: str, request: Request) -> dict[str, str]:
    if not _get_store(request).delete_site(site_id):
        raise HTTPException(status_code=404, detail=f"Website not found: {site_id}")
    return {"status": "deleted", "id": site_id}
