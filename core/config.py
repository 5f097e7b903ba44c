"""
Core configuration module for environment variables and settings management.

Design choices:
- Uses python-dotenv to load environment variables from a .env file when present.
- Provides a single get_settings() accessor with LRU caching to avoid repeated parsing.
- Command-line options are layered on top with with_overrides(), which re-validates
  the merged values so the same rules apply to both sources.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def normalize_database_url(raw_url: str) -> str:
    """Point bare DSNs at the async drivers the store runs on."""
    url = raw_url.strip()
    if url.startswith("postgresql+asyncpg://") or url.startswith("sqlite+aiosqlite://"):
        return url
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Settings(BaseModel):
    environment: str = "dev"

    # Corpus location and target store
    root: str = "."
    database_url: Optional[str] = None

    # Run mode
    dry_run: bool = False
    fail_fast: bool = False

    # Scheduling: concurrency must fit in the connection pool
    concurrency: int = Field(default=1, ge=1)
    pool_size: int = Field(default=5, ge=1)

    # Store deadlines and retry policy
    statement_timeout: float = Field(default=30.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_base: float = Field(default=0.1, ge=0)

    # Logging
    log_level: str = "INFO"
    echo_sql: bool = False

    @model_validator(mode="after")
    def validate_pool_capacity(self) -> "Settings":
        if self.concurrency > self.pool_size:
            raise ValueError(
                f"concurrency ({self.concurrency}) must not exceed pool_size ({self.pool_size})"
            )
        return self

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser().resolve()

    @property
    def async_database_url(self) -> Optional[str]:
        if not self.database_url:
            return None
        return normalize_database_url(self.database_url)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a validated copy with every non-None override applied."""
        merged: Dict[str, Any] = self.model_dump()
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return Settings(**merged)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load environment variables (from .env if present) and build a Settings object.

    This function is cached so repeated lookups during a run are cheap.
    """
    load_dotenv()  # no-op if .env not present
    return Settings(
        environment=os.getenv("ENVIRONMENT", "dev"),
        root=os.getenv("SEED_ROOT", "."),
        database_url=os.getenv("DATABASE_URL") or None,
        dry_run=_env_flag("DRY_RUN"),
        fail_fast=_env_flag("FAIL_FAST"),
        concurrency=int(os.getenv("CONCURRENCY", "1")),
        pool_size=int(os.getenv("POOL_SIZE", "5")),
        statement_timeout=float(os.getenv("STATEMENT_TIMEOUT", "30")),
        retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
        retry_backoff_base=float(os.getenv("RETRY_BACKOFF_BASE", "0.1")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        echo_sql=_env_flag("ECHO_SQL"),
    )
