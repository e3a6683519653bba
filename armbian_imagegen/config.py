"""Configuration settings for armbian_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_build_dir() -> Path:
    """Return the default build directory."""
    return Path("/tmp") / "bbos-builds"


def _default_cache_dir() -> Path:
    """Return the default download cache directory."""
    return Path.home() / ".cache" / "armbian-imagegen" / "images"


def _default_rkdeveloptool_path() -> Path:
    """Return the default rkdeveloptool binary path."""
    return Path.home() / "rkdeveloptool" / "rkdeveloptool"


def _default_loader_path() -> Path:
    """Return the default SPL loader blob path."""
    return Path.home() / "rkdeveloptool" / "rk3588_spl_loader_v1.15.113.bin"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ARMBIAN_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ARMBIAN_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    build_dir: Path = Field(
        default_factory=_default_build_dir,
        description="Root directory for per-build working directories",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Download cache for decompressed base images",
    )
    rkdeveloptool_path: Path = Field(
        default_factory=_default_rkdeveloptool_path,
        description="Path to the rkdeveloptool binary",
    )
    loader_path: Path = Field(
        default_factory=_default_loader_path,
        description="Path to the SPL loader pushed to devices in maskrom mode",
    )
    archive_base_url: str = Field(
        default="https://dl.armbian.com",
        description="Base URL of the Armbian image archive",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline/demo mode - never download, use cache or placeholder",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Cache
    cache_max_age_days: int = Field(
        default=30,
        ge=0,
        description="Cached base images older than this are re-downloaded (0 = never expire)",
    )

    # Flashing
    device_check_cooldown: float = Field(
        default=5.0,
        ge=0,
        description="Minimum seconds between non-forced device detections",
    )
    compression_threshold_bytes: int = Field(
        default=100 * 1024 * 1024,
        ge=0,
        description="Images larger than this are compressed before transfer",
    )
    loader_settle_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Wait after pushing the loader for the device to re-enumerate",
    )

    # Timeouts (in seconds)
    query_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for device inventory and status queries",
    )
    loader_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for pushing the loader to a maskrom device",
    )
    write_timeout: float = Field(
        default=600.0,
        ge=60,
        description="Timeout for full-image writes",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for base image downloads",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Overall deadline for one build",
    )


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
