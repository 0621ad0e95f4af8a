"""Pipeline configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

from .errors import ConfigurationError
from .models import Category

DEFAULT_MIN_RECORDS: dict[Category, int] = {
    Category.ACTIVE_SUBSCRIPTIONS: 100,
    Category.ORDERS: 10,
    Category.NEW_CUSTOMERS: 1,
}


class ImapConfig(BaseSettings):
    """IMAP settings for the monitored report inbox."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="Mailbox address / IMAP login")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP folder that receives report emails")
    sender_filter: str | None = Field(
        default=None,
        description="Optional FROM filter (e.g. the platform's sending domain)",
    )


class PlatformConfig(BaseSettings):
    """Admin-UI credentials handed to the trigger driver."""

    model_config = {"env_prefix": "PLATFORM_"}

    username: str = Field(default="", description="Platform admin login")
    password: SecretStr = Field(default=SecretStr(""), description="Platform admin password")


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=2, description="Maximum attempts per retried call")
    initial_wait_seconds: float = Field(default=2.0, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class StorageConfig(BaseSettings):
    """Database and local file locations."""

    model_config = {"env_prefix": "STORAGE_"}

    database_url: str = Field(
        default="postgresql+asyncpg://localhost/reports",
        description="Async SQLAlchemy URL for report tables and watermarks",
    )
    download_dir: Path = Field(
        default=Path("data/downloads"),
        description="Directory for downloaded attachments and extracted archive members",
    )


class ArchiveConfig(BaseSettings):
    """Optional S3 archive of raw report files."""

    model_config = {"env_prefix": "ARCHIVE_"}

    bucket: str = Field(default="", description="S3 bucket name (empty disables archiving)")
    prefix: str = Field(default="raw/reports", description="S3 key prefix for raw report files")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint URL (e.g. for MinIO)",
    )


class PipelineConfig(BaseSettings):
    """Root configuration for an ingestion run.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "PIPELINE_"}

    poll_timeout_seconds: float = Field(
        default=3600.0,
        description="Hard wall-clock bound on the inbox poll loop",
    )
    poll_interval_seconds: float = Field(
        default=30.0,
        description="Sleep between inbox poll iterations",
    )
    lookback_margin_seconds: float = Field(
        default=60.0,
        description="Poll anchor is trigger time minus this margin",
    )
    backfill_floor: date = Field(
        default=date(2024, 1, 1),
        description="Window start for categories that were never ingested",
    )
    inbox_lookback_hours: float = Field(
        default=24.0,
        description="Lookback for inbox-only runs",
    )
    min_records: dict[Category, int] = Field(
        default_factory=lambda: dict(DEFAULT_MIN_RECORDS),
        description="Expected minimum rows per category; unlisted categories are optional",
    )
    log_json: bool = Field(default=True, description="JSON log output (False for dev)")
    log_level: str = Field(default="INFO", description="Root log level")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)

    def require_mailbox(self) -> None:
        """Raise :class:`ConfigurationError` if the inbox cannot be reached."""
        missing = [
            name
            for name, value in (("IMAP_HOST", self.imap.host), ("IMAP_USERNAME", self.imap.username))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Mailbox not configured: set {', '.join(missing)}")
