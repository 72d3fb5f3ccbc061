"""Configuration settings for winpe_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default package cache directory."""
    return Path.home() / ".cache" / "winpe-imagegen" / "packages"


def _default_data_dir() -> Path:
    """Return the default data directory."""
    return Path.home() / ".local" / "share" / "winpe-imagegen"


def _default_work_dir() -> Path:
    """Return the default build work directory."""
    return _default_data_dir() / "work"


def _default_diagnostics_dir() -> Path:
    """Return the default diagnostics root."""
    return _default_data_dir() / "diagnostics"


def _default_lock_dir() -> Path:
    """Return the default directory for mount session locks."""
    return _default_data_dir() / "locks"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_data_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the WINPE_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="WINPE_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the runtime package cache",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-build mount and scratch space",
    )
    diagnostics_dir: Path = Field(
        default_factory=_default_diagnostics_dir,
        description="Root directory for failure diagnostics snapshots",
    )
    lock_dir: Path = Field(
        default_factory=_default_lock_dir,
        description="Directory holding mount session lock and owner files",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build history",
    )
    catalog_path: Path | None = Field(
        default=None,
        description="Runtime catalog YAML (version -> url/sha256); "
        "defaults to <cache_dir>/catalog.yaml",
    )

    # External tools
    dism_path: str = Field(default="dism.exe", description="DISM executable")
    reg_path: str = Field(default="reg.exe", description="reg.exe executable")
    oscdimg_path: str = Field(
        default="oscdimg.exe", description="oscdimg executable for ISO assembly"
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - do not download runtime packages",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    collect_registry_hives: bool = Field(
        default=True,
        description="Copy offline registry hives into diagnostics snapshots",
    )
    min_free_space_mb: int = Field(
        default=2048,
        ge=0,
        description="Free space required in the work directory before a build",
    )
    stale_session_timeout: int = Field(
        default=3600,
        ge=0,
        description="Age after which a dead owner's mount session may be recovered",
    )

    # Retry
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for downloads, mount and dismount",
    )
    retry_base_delay: float = Field(
        default=2.0,
        ge=0,
        description="Base backoff delay in seconds",
    )
    retry_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff delay in seconds",
    )

    # Timeouts (in seconds)
    acquire_timeout: int = Field(
        default=600,
        ge=1,
        description="Timeout for acquiring a mount session",
    )
    mount_timeout: int = Field(
        default=900,
        ge=1,
        description="Timeout for a single mount attempt",
    )
    dismount_timeout: int = Field(
        default=900,
        ge=1,
        description="Timeout for a single dismount attempt",
    )
    task_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for each customization task",
    )
    download_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for runtime package downloads",
    )
    cache_lock_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout waiting for another process to finish a runtime download",
    )
    assemble_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for artifact assembly",
    )

    def effective_catalog_path(self) -> Path:
        """Return the catalog path, falling back to the cache directory."""
        if self.catalog_path is not None:
            return self.catalog_path
        return self.cache_dir / "catalog.yaml"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
