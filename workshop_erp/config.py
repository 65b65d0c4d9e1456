"""
Configuration management using pydantic-settings

Values come from environment variables prefixed with ``WORKSHOP_`` and an
optional ``.env`` file in the working directory.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="WORKSHOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    DATABASE_PATH: str = Field(
        default="workshop.sqlite3",
        description="SQLite file backing the web application",
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Order numbering
    ORDER_NUMBER_PREFIX: str = Field(default="OS", description="Order number prefix")
    ORDER_NUMBER_RETRIES: int = Field(
        default=5,
        ge=1,
        description="Attempts before giving up on a contested order number",
    )
    MAX_ORDER_BASE: int = Field(
        default=99_999_999,
        ge=1,
        description="Highest base number the sequence may issue",
    )

    # Time tracking
    HOURS_DECIMAL_PLACES: int = Field(
        default=4,
        ge=0,
        le=8,
        description="Fixed-point precision of persisted session hours",
    )


@lru_cache
def get_settings() -> Settings:
    """Get the global settings instance"""
    return Settings()
