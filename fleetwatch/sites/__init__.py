"""Website records: SQLite store and YAML import."""

from .registry import SiteEntry, SiteRegistry
from .store import MonitoredSite, PersistenceError, PersistenceWriteError, SiteStore
