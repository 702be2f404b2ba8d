"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates required fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_SCHEMA = "nftstorage"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Required:
        DATABASE_URL: Base URL of the PostgREST endpoint
        DATABASE_TOKEN: Bearer token sent with every query

    Optional:
        DATABASE_USER_SCHEMA: Schema holding user, key and tag records
        DATABASE_TIMEOUT_SECONDS: Transport timeout per request
        LOG_LEVEL: Logging level
        LOG_FILE: JSON lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str = Field(..., description="PostgREST endpoint URL")
    DATABASE_TOKEN: str = Field(..., description="Bearer token for the endpoint")

    DATABASE_USER_SCHEMA: str = Field(
        default=DEFAULT_USER_SCHEMA,
        description="Schema holding user, auth key and user tag tables",
    )
    DATABASE_TIMEOUT_SECONDS: float = Field(
        default=30.0, gt=0.0, description="Transport timeout per request in seconds"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON lines log file")

    @property
    def database_url(self) -> str:
        """Get the endpoint URL (lowercase alias)."""
        return self.DATABASE_URL

    @property
    def database_token(self) -> str:
        """Get the bearer token (lowercase alias)."""
        return self.DATABASE_TOKEN

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate that DATABASE_URL is an http(s) URL."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("DATABASE_URL must be an http:// or https:// URL")
        return v.rstrip("/")

    @field_validator("DATABASE_TOKEN")
    @classmethod
    def validate_database_token(cls, v: str) -> str:
        """Reject empty tokens."""
        if not v.strip():
            raise ValueError("DATABASE_TOKEN must not be empty")
        return v.strip()

    def redacted_display(self) -> dict[str, str | float | None]:
        """Return settings with the token redacted for display."""
        token = self.DATABASE_TOKEN
        redacted = f"{token[:8]}...{token[-4:]}" if len(token) > 12 else "***"
        return {
            "DATABASE_URL": self.DATABASE_URL,
            "DATABASE_TOKEN": redacted,
            "DATABASE_USER_SCHEMA": self.DATABASE_USER_SCHEMA,
            "DATABASE_TIMEOUT_SECONDS": self.DATABASE_TIMEOUT_SECONDS,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
