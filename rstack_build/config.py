"""Configuration settings for rstack_build.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings is the only place that reads the process environment. It is turned
into an immutable BuildConfig once per build, and that value is what every
pipeline component receives.
"""

import os
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rstack_build.cache.keys import DEFAULT_RELEASE_VERSION
from rstack_build.types import DEFAULT_RUNTIME_VERSIONS, Stack, parse_stack

DEFAULT_BASE_URL = "https://rstack-build-artifacts.s3.amazonaws.com"
DEFAULT_PACKAGE_MIRROR = "https://cloud.r-project.org"


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "rstack-build"


class BuildConfig(BaseModel):
    """Immutable configuration for a single build.

    Constructed once at startup from Settings and passed to every component.
    """

    model_config = ConfigDict(frozen=True)

    stack: Stack
    release_version: str
    runtime_version: str
    package_mirror: str
    base_url: str
    build_dir: Path
    app_dir: Path
    sandbox_dir: Path
    cache_dir: Path
    pin_file: Path | None = None
    addon_runtime: str | None = None
    debug: bool = False
    keep_artifacts: bool = False
    fetch_retries: int = 3
    fetch_backoff: float = 2.0
    download_timeout: int = 3600
    command_timeout: int | None = None

    @property
    def sync_required(self) -> bool:
        """Whether the build output path differs from the sandbox app path."""
        return self.build_dir.resolve() != self.app_dir.resolve()

    @property
    def log_path(self) -> Path:
        """Path of the sandbox command log for this build."""
        return self.cache_dir / "logs" / "build.log"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the RSTACK_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="RSTACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Platform
    stack: str | None = Field(
        default=None,
        description="Target stack identifier (18, 20, 22 or heroku-NN)",
    )
    release_version: str = Field(
        default=DEFAULT_RELEASE_VERSION,
        description="Release version token used in cache keys and artifact URLs",
    )
    runtime_version: str | None = Field(
        default=None,
        description="R version override (defaults to the stack's version)",
    )
    package_mirror: str = Field(
        default=DEFAULT_PACKAGE_MIRROR,
        description="CRAN mirror passed to bootstrap scripts",
    )
    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="Base URL for remote artifacts",
    )
    addon_runtime: str | None = Field(
        default=None,
        description="Optional add-on runtime artifact to install (e.g. shiny)",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for cache layers and downloaded artifacts",
    )
    app_dir: Path = Field(
        default=Path("/app"),
        description="Fixed path at which the build tree is visible in the sandbox",
    )
    sandbox_dir: Path | None = Field(
        default=None,
        description=(
            "Sandbox root directory, emptied at the start of every build "
            "(uses a temporary directory if not set)"
        ),
    )
    pin_file: Path | None = Field(
        default=None,
        description="Version-pinning file whose content fingerprints the cache key",
    )

    # Operational modes
    debug: bool = Field(
        default=False,
        description="Debug tracing: stream sandbox output to the log",
    )
    keep_artifacts: bool = Field(
        default=False,
        description="Test mode - keep ephemeral artifacts after the build",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Network
    fetch_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per artifact download (1 disables retries)",
    )
    fetch_backoff: float = Field(
        default=2.0,
        ge=0,
        description="Base delay in seconds for exponential fetch backoff",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for artifact downloads",
    )
    command_timeout: int | None = Field(
        default=None,
        description="Timeout for each sandbox command (None = no timeout)",
    )

    def to_build_config(self, build_dir: Path) -> BuildConfig:
        """Validate settings and freeze them into a BuildConfig.

        Args:
            build_dir: Final build output directory.

        Returns:
            Immutable BuildConfig.

        Raises:
            UnsupportedPlatformError: If the stack is missing or unsupported.
        """
        stack = parse_stack(self.stack or "")
        sandbox_dir = self.sandbox_dir or (
            Path(tempfile.gettempdir()) / f"rstack-sandbox-{os.getpid()}"
        )
        return BuildConfig(
            stack=stack,
            release_version=self.release_version,
            runtime_version=self.runtime_version or DEFAULT_RUNTIME_VERSIONS[stack],
            package_mirror=self.package_mirror,
            base_url=self.base_url.rstrip("/"),
            build_dir=build_dir,
            app_dir=self.app_dir,
            sandbox_dir=sandbox_dir,
            cache_dir=self.cache_dir,
            pin_file=self.pin_file,
            addon_runtime=self.addon_runtime,
            debug=self.debug,
            keep_artifacts=self.keep_artifacts,
            fetch_retries=self.fetch_retries,
            fetch_backoff=self.fetch_backoff,
            download_timeout=self.download_timeout,
            command_timeout=self.command_timeout,
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


__all__ = ["BuildConfig", "Settings", "get_settings", "print_settings_json"]
