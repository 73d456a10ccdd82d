"""Configuration settings for emcomm_isogen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

UBUNTU_BASE_IMAGE_URL = (
    "https://old-releases.ubuntu.com/releases/kinetic/ubuntu-22.10-desktop-amd64.iso"
)


def _default_cache_dir() -> Path:
    """Return the default artifact cache directory."""
    return Path.home() / ".cache" / "emcomm-isogen"


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "emcomm-isogen"


def _default_output_dir() -> Path:
    """Return the default directory for finished ISOs."""
    return _default_data_dir() / "output"


def _default_logs_dir() -> Path:
    return _default_data_dir() / "logs"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_data_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the EMCOMM_ISO_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMCOMM_ISO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for downloaded artifacts and backups",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory receiving finished ISO images",
    )
    work_dir: Path = Field(
        default=Path("/var/tmp/emcomm-isogen/work"),
        description="Scratch directory holding the extracted image trees",
    )
    logs_dir: Path = Field(
        default_factory=_default_logs_dir,
        description="Directory for timestamped build logs and manifests",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    station_config: Path = Field(
        default=Path("station.yaml"),
        description="Station configuration file (YAML/JSON, or legacy secrets.env)",
    )
    previous_state_root: Path | None = Field(
        default=None,
        description="Root of a previous installation used for rolling backups",
    )
    addons_dir: Path | None = Field(
        default=None,
        description="Directory overlaid onto the image root before customization",
    )

    # Upstream sources
    base_image_url: str = Field(
        default=UBUNTU_BASE_IMAGE_URL,
        description="URL of the stock Ubuntu desktop ISO",
    )
    base_image_sha256: str | None = Field(
        default=None,
        description="Expected SHA256 of the base ISO (recorded on first fetch if unset)",
    )
    github_repo: str = Field(
        default="thetechprepper/emcomm-tools-os-community",
        description="GitHub repository publishing the ETC installer",
    )
    github_api_base: str = Field(
        default="https://api.github.com",
        description="GitHub API base URL",
    )
    addons_url: str = Field(
        default="https://github.com/clifjones/et-os-addons/archive/refs/heads/main.zip",
        description="Archive of the optional et-os-addons overlay",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - only use cached artifacts",
    )
    keep_work: bool = Field(
        default=False,
        description="Keep the work directory after the build",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Fetching
    fetch_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Download attempts before giving up",
    )
    fetch_backoff: float = Field(
        default=2.0,
        ge=0,
        description="Base delay in seconds for exponential download backoff",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for artifact downloads",
    )

    # Image
    installer_marker: str = Field(
        default="opt/emcomm-tools",
        description="Path (relative to the image root) created by a successful install",
    )
    squashfs_compression: Literal["xz", "gzip", "zstd", "lz4"] = Field(
        default="xz",
        description="Compression used when rebuilding filesystem.squashfs",
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
