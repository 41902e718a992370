from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    db_path: str = "data/fleetwatch.db"
    sites_file: str = "sites.yaml"  # optional YAML seed for the site list
    history_retention_days: int = 30

    # Fleet scan
    probe_timeout: float = 10.0  # seconds, per network call
    max_concurrency: int = 20  # sites scanned at once
    expiry_warning_days: int = 30  # certificates expiring sooner degrade to PROBLEMATIC
    scan_interval_seconds: int = 3600  # 0 disables the background scheduler

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
