from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Whitelist store configuration, overridable via MACGUARD_* environment variables."""

    # Storage layout
    data_dir: Path = Path("data")
    whitelist_filename: str = "mac-whitelist.json"
    log_filename: str = "access-log.json"
    backup_dirname: str = "backups"
    lock_filename: str = ".lock"

    # Backups (disable on ephemeral filesystems)
    enable_backups: bool = True
    max_backups: int = Field(default=10, ge=1)

    # Access log bound
    max_log_entries: int = Field(default=1000, ge=1)

    # Locking
    lock_timeout: float = Field(default=5.0, gt=0)
    lock_poll_interval: float = Field(default=0.01, gt=0)
    stale_lock_seconds: float | None = 30.0

    # Admin CLI
    admin_key: str | None = None
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(env_prefix="MACGUARD_", env_file=".env", extra="ignore")
