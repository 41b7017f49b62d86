"""
Rebus Configuration Module.

Centralizes all configuration settings using Pydantic Settings.
Requires Python 3.11+.
"""

import tempfile
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file into os.environ at module import time
# This ensures nested BaseSettings classes can read the values
load_dotenv()


def _default_directory() -> Path:
    """Shared directory used when a caller does not name one."""
    return Path(tempfile.gettempdir()) / "rebus"


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="json")  # "json" or "console"


class RebusSettings(BaseSettings):
    """Shared tree engine settings."""

    model_config = SettingsConfigDict(env_prefix="REBUS_")

    directory: Path = Field(
        default_factory=_default_directory,
        description="Backing directory shared by all instances",
    )
    singletons: bool = Field(
        default=True,
        description="Reuse one instance per directory per process",
    )
    persistent: bool = Field(
        default=True,
        description="Keep the process alive while a directory watch is armed",
    )
    suffix: str = Field(default=".json", min_length=2)
    delimiter: str = Field(default=".", min_length=1, max_length=1)
    hidden_prefix: str = Field(default=".", min_length=1)
    publish_timeout: float | None = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for a published value to be echoed back",
    )
    start_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for fragments being written during startup",
    )

    @field_validator("suffix")
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        """Suffix must look like a file extension."""
        if not v.startswith("."):
            raise ValueError("suffix must start with '.'")
        return v


class Settings(BaseSettings):
    """Main settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="rebus")
    app_version: str = Field(default="0.1.0")

    # Sub-settings
    rebus: RebusSettings = Field(default_factory=RebusSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings.

    Returns singleton instance of Settings. Call ``get_settings.cache_clear()``
    after changing the environment to pick the new values up.
    """
    return Settings()
