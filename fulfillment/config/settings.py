"""
Retail Fulfillment Core
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DuplicateLinePolicy(str, Enum):
    """How an order treats two lines naming the same variant"""
    MERGE = "merge"
    REJECT = "reject"


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="retail", alias="database", description="Database name")
    user: str = Field(default="retail", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Database URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg from host/port"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_", populate_by_name=True)

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class CurrencySettings(BaseSettings):
    """Exchange Rate Provider Configuration"""

    model_config = SettingsConfigDict(env_prefix="FX_")

    provider_url: str = Field(
        default="https://api.exchangerate.host/live",
        description="CurrencyLayer-compatible live quotes endpoint",
    )
    access_key: Optional[SecretStr] = Field(default=None, description="Provider access key")
    cache_ttl_seconds: int = Field(default=8 * 60 * 60, description="Quote cache lifetime")
    request_timeout: float = Field(default=10.0, description="HTTP timeout in seconds")
    quotes: Optional[Dict[str, float]] = Field(
        default=None,
        description="Static USD-based quotes used instead of the live provider",
    )


class FulfillmentSettings(BaseSettings):
    """Order Fulfillment Policy Configuration"""

    model_config = SettingsConfigDict(env_prefix="FULFILLMENT_")

    duplicate_line_policy: DuplicateLinePolicy = Field(
        default=DuplicateLinePolicy.MERGE,
        description="Merge or reject repeated variant lines in one order",
    )
    size_mod_rate: Decimal = Field(default=Decimal("0.05"), description="Size modification surcharge")
    allow_direct_fulfillment: bool = Field(
        default=False,
        description="Allow Processing -> Delivered for orders settled in person",
    )
    max_retries: int = Field(default=3, ge=0, description="Retries on concurrent modification")
    order_id_prefix: str = Field(default="M-ORD", description="Prefix for generated order ids")

    @field_validator("size_mod_rate")
    @classmethod
    def validate_size_mod_rate(cls, v: Decimal) -> Decimal:
        """Surcharge must be a fraction of the line total"""
        if v < 0 or v > 1:
            raise ValueError("size_mod_rate must be between 0 and 1")
        return v


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="retail-fulfillment", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    currency: CurrencySettings = Field(default_factory=CurrencySettings)
    fulfillment: FulfillmentSettings = Field(default_factory=FulfillmentSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
