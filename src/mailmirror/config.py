"""Configuration management for mailmirror.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAILMIRROR_ prefix (e.g., MAILMIRROR_SYNC_INTERVAL_SECONDS).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILMIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Gmail Configuration
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API OAuth client secrets file",
    )
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to the cached Gmail OAuth token",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.modify",
        description=(
            "OAuth scope used for Gmail access. Trash, untrash and label edits "
            "need gmail.modify."
        ),
    )

    # Cache store
    db_path: Path = Field(
        default=Path("mailmirror.sqlite3"),
        description="Path to the local SQLite cache file",
    )
    db_busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long a writer waits on a locked database before failing",
    )

    # Reconciliation
    sync_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description=(
            "Seconds between background sync passes. Local actions that race a "
            "pass converge within one interval after the remote call lands."
        ),
    )
    sync_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Maximum message refs requested per label on each pass",
    )
    sync_label_ids: list[str] | None = Field(
        default=None,
        description="Labels to reconcile; None reconciles every remote label",
    )
    sync_storage_retries: int = Field(
        default=2,
        ge=0,
        description="Retries for a failed cache write during a sync pass",
    )

    # View
    view_page_size: int = Field(
        default=50,
        ge=1,
        description="Messages loaded per page of the visible list",
    )
    view_collapse_threads: bool = Field(
        default=False,
        description="Show one row per thread (the newest message) in label views",
    )
    signature: str | None = Field(
        default=None,
        description="Appended to new messages and replies",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_file: Path | None = Field(
        default=None,
        description="Write logs to this file instead of stderr",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
