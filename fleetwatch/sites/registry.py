"""Site registry loads sites.yaml so a fleet can be seeded in bulk.

The database stays the source of truth; the YAML file is only an import format.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from fleetwatch.sites.store import SiteStore, validate_url

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path(__file__).parent.parent.parent / "sites.yaml"


@dataclass
class SiteEntry:
    """One website as declared in sites.yaml."""

    name: str
    url: str
    id: str = ""
    host_provider: str = ""
    technologies: list[str] = field(default_factory=list)
    notes: str = ""


class SiteRegistry:
    """Loads and caches site entries from a YAML file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else REGISTRY_PATH
        self._entries: list[SiteEntry] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[SiteEntry]:
        """Parse the YAML file and return the valid entries."""
        if self._loaded and not force:
            return self._entries

        self._entries = []
        if not self._path.exists():
            logger.warning("Registry file not found: %s", self._path)
            self._loaded = True
            return self._entries

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._entries

        if not isinstance(raw, dict):
            logger.error("Expected a mapping at the top of %s", self._path)
            self._loaded = True
            return self._entries

        for entry in raw.get("sites", []) or []:
            try:
                self._entries.append(_parse_entry(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed site entry: %s", e)

        self._loaded = True
        logger.info("Loaded %d sites from %s", len(self._entries), self._path)
        return self._entries

    @property
    def entries(self) -> list[SiteEntry]:
        return self.load()

    def sync(self, store: SiteStore) -> int:
        """Add entries not yet in the store (matched by id, else by URL). Returns the count added."""
        existing = store.list_monitored_sites()
        known_ids = {s.id for s in existing}
        known_urls = {s.url for s in existing}

        added = 0
        for e in self.entries:
            if (e.id and e.id in known_ids) or e.url in known_urls:
                continue
            site = store.add_site(
                name=e.name,
                url=e.url,
                host_provider=e.host_provider,
                technologies=e.technologies,
                notes=e.notes,
                site_id=e.id or None,
            )
            known_ids.add(site.id)
            known_urls.add(site.url)
            added += 1

        if added:
            logger.info("Imported %d new sites from %s", added, self._path)
        return added


def _parse_entry(raw: dict[str, Any]) -> SiteEntry:
    if not isinstance(raw, dict):
        raise TypeError(f"expected a mapping, got {type(raw).__name__}")
    url = validate_url(str(raw["url"]))
    technologies = raw.get("technologies") or []
    if isinstance(technologies, str):
        technologies = [t.strip() for t in technologies.split(",") if t.strip()]
    return SiteEntry(
        id=str(raw.get("id") or ""),
        name=str(raw.get("name") or url),
        url=url,
        host_provider=str(raw.get("host_provider") or ""),
        technologies=list(technologies),
        notes=str(raw.get("notes") or ""),
    )
