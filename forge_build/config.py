"""Configuration settings for forge_build.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from forge_build.types import FORGE_CORE_NAMESPACE


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "forge-build" / "store.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Controller settings.

    Settings are loaded from environment variables with the FORGE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="FORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Object store
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Object store database URL",
    )

    # Logging
    log_level: Literal["debug", "info", "error"] = Field(
        default="info",
        description="Logging level",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        description="Log output format",
    )

    # Manager
    leader_elect: bool = Field(
        default=False,
        description="Enable leader election so only one manager is active",
    )
    leader_election_id: str = Field(
        default="forge-build-leader",
        description="Name of the Lease object used for leader election",
    )
    leader_election_namespace: str = Field(
        default=FORGE_CORE_NAMESPACE,
        description="Namespace of the leader election Lease",
    )
    lease_duration: float = Field(
        default=15.0,
        gt=0,
        description="Seconds a leader holds the lease without renewing it",
    )
    worker_number: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of concurrent Build reconcile workers",
    )
    metrics_bind_address: str = Field(
        default=":8080",
        description="Address the probe endpoint binds to; '0' disables it",
    )
    worker_name: str = Field(
        default="",
        description="Only reconcile objects carrying this watch-filter label value",
    )

    # Retry policy
    retry_base_delay: float = Field(
        default=0.005,
        gt=0,
        description="Initial backoff in seconds after a failed reconcile",
    )
    retry_max_delay: float = Field(
        default=1000.0,
        gt=0,
        description="Upper bound of the per-key backoff in seconds",
    )

    # Shell provisioner
    provisioner_namespace: str = Field(
        default=FORGE_CORE_NAMESPACE,
        description="Namespace provisioner Jobs are created in",
    )
    shell_provisioner_image: str = Field(
        default="ghcr.io/forge-build/forge-provisioner-shell",
        description="Container image of the built-in shell provisioner",
    )
    shell_provisioner_tag: str = Field(
        default="dev",
        description="Tag of the built-in shell provisioner image",
    )
    ssh_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds to wait for the build machine's SSH endpoint",
    )


def get_settings() -> Settings:
    """Get the controller settings.

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
