"""
Kestrel Configuration Management

Pydantic-based settings for the paper-trading ledger, price alert monitor,
market data polling, persistence and notification delivery.
"""

from decimal import Decimal
from typing import Optional
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Environment types for deployment configuration."""
    LOCAL = "local"
    DEVELOPMENT = "development"
    TESTING = "testing"
    DOCKER = "docker"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels for application output."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Where ledger, alert and watchlist state is persisted."""
    REDIS = "redis"
    MEMORY = "memory"


class Settings(BaseSettings):
    """
    Kestrel application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    # Application Metadata
    app_name: str = "Kestrel"
    version: str = "1.0.0"
    environment: Environment = Environment.LOCAL
    debug: bool = False

    # Logging Configuration
    log_level: LogLevel = LogLevel.INFO
    log_to_file: bool = False
    log_file_path: str = "logs/kestrel.log"
    log_json_format: bool = False
    log_rotation_size: str = "20MB"
    log_retention_days: int = Field(default=14, ge=1, le=365)
    log_compression: str = "zip"

    # Storage Configuration
    storage_backend: StorageBackend = StorageBackend.REDIS
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "kestrel"
    redis_max_connections: int = Field(default=10, ge=1, le=100)
    storage_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Upper bound for a single store read or write"
    )
    portfolio_state_key: str = "portfolio_state"
    alert_rules_key: str = "price_alerts"
    watchlist_key: str = "watchlist"

    # Market Data (CoinGecko)
    market_data_base_url: str = "https://api.coingecko.com/api/v3"
    market_vs_currency: str = "usd"
    market_per_page: int = Field(default=100, ge=1, le=250)
    market_page_count: int = Field(default=1, ge=1, le=10)
    market_request_timeout: float = Field(default=10.0, gt=0, le=120)

    # Polling
    price_poll_interval: float = Field(
        default=30.0,
        ge=5,
        le=3600,
        description="Seconds between price table refreshes"
    )
    alert_check_interval: float = Field(
        default=30.0,
        le=3600,
        description="Seconds between alert evaluation passes"
    )
    refresh_timeout: float = Field(
        default=15.0,
        gt=0,
        description="A refresh slower than this counts as a failed fetch"
    )

    # Ledger Configuration
    initial_capital: Decimal = Field(
        default=Decimal("100000"),
        ge=0,
        description="Starting paper balance in USD"
    )
    max_leverage: int = Field(default=125, ge=1, le=1000)

    # Watchlist
    watchlist_max_coins: int = Field(default=15, ge=1, le=500)

    # Notifications (Slack)
    slack_webhook_url: Optional[str] = None
    slack_channel: str = "price-alerts"
    slack_username: str = "Kestrel"
    slack_icon_emoji: str = ":bird:"

    @field_validator('redis_url')
    @classmethod
    def validate_redis_url(cls, v):
        """Validate Redis URL format."""
        if not v.startswith(('redis://', 'rediss://', 'unix://')):
            raise ValueError('Redis URL must start with redis://, rediss:// or unix://')
        return v

    @field_validator('market_data_base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    @model_validator(mode='after')
    def validate_polling(self):
        """Validate polling cadence constraints."""
        if self.alert_check_interval < 1:
            raise ValueError('alert_check_interval must be at least 1 second')

        if self.refresh_timeout >= self.price_poll_interval:
            raise ValueError('refresh_timeout must be shorter than price_poll_interval')

        return self

    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get application settings.

    Returns:
        Settings: Configured application settings
    """
    return settings

