"""
Configuration management using pydantic-settings

Loads configuration from environment variables and .env file
"""

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Storage Configuration
    STORE_BACKEND: Literal["memory", "postgres"] = Field(
        default="memory",
        description="Record store backend: in-process memory or PostgreSQL"
    )
    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Full database connection URL (overrides DB_* fields when set)"
    )
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: int = Field(default=5432, description="Database port")
    DB_NAME: str = Field(default="dispatch_db", description="Database name")
    DB_USER: str = Field(default="dispatch_user", description="Database user")
    DB_PASSWORD: str = Field(default="dispatch_password", description="Database password")
    DB_POOL_MIN: int = Field(default=1, ge=1, description="Minimum pooled connections")
    DB_POOL_MAX: int = Field(default=10, ge=1, description="Maximum pooled connections")

    # Logging
    SERVICE_NAME: str = Field(default="courier-dispatch", description="Service name stamped on log records")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=True, description="Emit structured JSON log lines")

    # Working hours are wall-clock times in this zone
    TIMEZONE: str = Field(
        default="America/Sao_Paulo",
        description="IANA time zone used to evaluate courier working hours"
    )

    # Orders
    TRACKING_CODE_PREFIX: str = Field(default="MR", description="Prefix for public tracking codes")
    MAX_TRACKING_CODE_ATTEMPTS: int = Field(
        default=5,
        ge=1,
        description="Attempts to generate a unique tracking code before giving up"
    )
    DEFAULT_ESTIMATED_DELIVERY_TIME: int = Field(
        default=30,
        ge=1,
        description="Estimated delivery time (minutes) when the company has none configured"
    )
    DEFAULT_PAGE_SIZE: int = Field(default=20, ge=1, description="Default page size for order listings")
    MAX_PAGE_SIZE: int = Field(default=100, ge=1, description="Upper bound for page size")

    # Reputation
    RECENT_RATINGS_WINDOW_DAYS: int = Field(
        default=30,
        ge=1,
        description="Trailing window (days) for the recent subset of rating stats"
    )

    @field_validator("TIMEZONE")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {value}") from None
        return value

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.TIMEZONE)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance"""
    return settings
