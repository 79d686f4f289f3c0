"""Configuration management using Pydantic settings."""

from datetime import date, datetime, timezone
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


def to_iso8601(dt: datetime | date | None) -> str | None:
    """
    Format datetime/date to ISO8601 string.

    All datetimes are assumed to be UTC and get 'Z' suffix.
    Date-only values get no timezone suffix.

    Usage:
        "synced_at": to_iso8601(datetime.now(timezone.utc))
    """
    if dt is None:
        return None
    if isinstance(dt, datetime):
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return f"{dt.isoformat()}Z"
    # date only - no timezone
    return dt.isoformat()

# Find .env file - check current dir, then parent
_env_file = Path(".env")
if not _env_file.exists():
    _env_file = Path("../.env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database - SQLite by default, PostgreSQL via postgresql+asyncpg://
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/tickets.sqlite"
    AUTO_CREATE_TABLES: bool = True

    # HubSpot private app token
    HUBSPOT_ACCESS_TOKEN: Optional[str] = None
    HUBSPOT_API_BASE: str = "https://api.hubapi.com"
    HUBSPOT_REQUEST_TIMEOUT: float = 30.0

    # Search API throttling: at most CALLS requests per WINDOW_MS
    HUBSPOT_RATE_LIMIT_CALLS: int = 100
    HUBSPOT_RATE_LIMIT_WINDOW_MS: int = 10_000

    # Pagination
    HUBSPOT_PAGE_SIZE: int = 100
    HUBSPOT_MAX_PAGES: int = 50  # Safety valve against endless cursors
    HUBSPOT_PAGE_DELAY_SECONDS: float = 0.2

    # Sync pipeline batching
    SYNC_PROCESS_BATCH_SIZE: int = 20
    SYNC_PROCESS_BATCH_DELAY_SECONDS: float = 0.1
    SYNC_SAVE_BATCH_SIZE: int = 10
    SYNC_SAVE_BATCH_DELAY_SECONDS: float = 0.2
    REFRESH_DELAY_SECONDS: float = 0.2

    TICKET_CONTENT_MAX_CHARS: int = 1000

    # None = pipeline stages cached until process restart
    PIPELINE_STAGE_CACHE_TTL_SECONDS: Optional[float] = None

    # App
    ENVIRONMENT: str = "development"
    FRONTEND_URL: str = "http://localhost:3000"

    class Config:
        env_file = str(_env_file)
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars from shared .env files


settings = Settings()

EXPECTED_ENV_VARS: tuple[str, ...] = (
    "DATABASE_URL",
    "HUBSPOT_ACCESS_TOKEN",
    "ENVIRONMENT",
    "FRONTEND_URL",
)


def log_missing_env_vars(logger: logging.Logger) -> None:
    """Log debug warnings for expected environment variables that are unset."""
    for var_name in EXPECTED_ENV_VARS:
        value = os.environ.get(var_name)
        if value is None or value == "":
            logger.debug(
                "Warning: expected environment variable %s is not set.",
                var_name,
            )
