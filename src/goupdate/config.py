"""Configuration management for goupdate."""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GOUPDATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Release sources
    release_feed_url: str = Field(
        default="https://go.dev/dl/?mode=json",
        description="JSON feed listing Go releases, newest first",
    )
    download_base_url: str = Field(
        default="https://dl.google.com/go",
        description="Base URL that archives and their .sha256 files are served from",
    )
    platform: str = Field(default="linux-amd64", description="OS/arch suffix of the archive")
    version_prefix: str = Field(default="go", description="Tag prefix of feed versions")

    # Install layout
    install_root: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "lib",
        description="Directory the Go tree is extracted into",
    )
    bin_dir: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "bin",
        description="Directory the go/gofmt symlinks are placed in",
    )

    # Retry policy
    poll_interval: float = Field(default=3.0, description="Seconds between attempts")
    poll_timeout: float = Field(default=60.0, description="Retry budget per operation")
    pipeline_timeout: float = Field(default=300.0, description="Deadline for a whole run")

    # HTTP client
    http_connect_timeout: float = Field(default=5.0)
    http_read_timeout: float = Field(default=10.0)
    http_write_timeout: float = Field(default=10.0)
    http_pool_timeout: float = Field(default=5.0)
    http_request_timeout: float = Field(
        default=30.0, description="Upper bound for any single phase not covered above"
    )
    http_max_connections: int = Field(default=100)
    http_max_keepalive_connections: int = Field(default=10)
    http_keepalive_expiry: float = Field(default=90.0)

    # Pipeline behaviour
    verify_install: bool = Field(default=True, description="Run 'go version' after install")
    keep_download: bool = Field(default=False, description="Keep the downloaded archive")
    check_only: bool = Field(default=False, description="Report availability without installing")

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write JSON logs to a file")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024)
    log_file_backup_count: int = Field(default=5)

    @field_validator(
        "poll_interval",
        "poll_timeout",
        "pipeline_timeout",
        "http_connect_timeout",
        "http_read_timeout",
        "http_write_timeout",
        "http_pool_timeout",
        "http_request_timeout",
    )
    @classmethod
    def _must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise ValueError(f"unknown log level: {value}")
        return value.upper()

    @field_validator("install_root", "bin_dir")
    @classmethod
    def _expand_home(cls, value: Path) -> Path:
        return value.expanduser()

    @model_validator(mode="after")
    def _distinct_directories(self) -> "Settings":
        if self.install_root.resolve() == self.bin_dir.resolve():
            raise ValueError("install_root and bin_dir must be different directories")
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        """Full path of the main log file."""
        return str(Path(self.log_directory) / "goupdate.log")

    @property
    def version_file(self) -> Path:
        """VERSION file shipped inside an installed Go tree."""
        return self.install_root / "go" / "VERSION"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
