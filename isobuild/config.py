"""Configuration settings for isobuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default working directory for staged build contexts."""
    return Path.home() / ".cache" / "isobuild" / "work"


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory."""
    return Path.home() / ".local" / "share" / "isobuild" / "runs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "isobuild" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ISOBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISOBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for staged build contexts and locks",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for run outputs (artifact, logs, manifest)",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    # Container engine
    container_engine: str = Field(
        default="docker",
        min_length=1,
        description="Container engine executable (docker or podman)",
    )
    image_prefix: str = Field(
        default="isobuild",
        min_length=1,
        description="Repository prefix for tags of produced images",
    )
    registry_url: str = Field(
        default="https://registry-1.docker.io",
        description="Registry API base URL for unqualified image references",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - do not contact image registries",
    )
    keep_context: bool = Field(
        default=False,
        description="Keep staged build contexts after a run",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for each container engine build step",
    )
    registry_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for registry API requests",
    )
    lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout waiting for a per-cache-key run lock",
    )


def get_settings() -> Settings:
    """Get the application settings.

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
