"""
Runtime settings for candlesync.

Each concern (Redis, exchange, trading, logging) is its own pydantic-settings
model with an environment prefix, e.g. ``REDIS_HOST`` or ``TRADING_PAPER_TRADING``.
Values come from the process environment first, then from a local ``.env``.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from candlesync.config.constants import (
    DEFAULT_CLAIM_TTL_SECONDS,
    QTY_FRACTION,
    RECV_SKEW_MS,
)


class RedisSettings(BaseSettings):
    """Redis configuration settings."""

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    key_prefix: str = Field(
        default="candlesync", description="Namespace prepended to every key"
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ExchangeSettings(BaseSettings):
    """Exchange API configuration settings."""

    api_key: SecretStr = Field(default=SecretStr(""), description="Exchange API key")
    api_secret: SecretStr = Field(default=SecretStr(""), description="Exchange API secret")
    testnet_api_key: SecretStr = Field(
        default=SecretStr(""), description="Testnet API key"
    )
    testnet_api_secret: SecretStr = Field(
        default=SecretStr(""), description="Testnet API secret"
    )
    testnet: bool = Field(default=True, description="Use testnet environment")
    base_url: str = Field(
        default="https://api-testnet.bybit.com", description="Exchange REST base URL"
    )
    secret_source: Literal["env", "file"] = Field(
        default="env", description="Where credentials are read from"
    )
    secret_id: str = Field(
        default="creds/bybit",
        description="Secret identifier (file path when secret_source=file)",
    )
    recv_skew_ms: int = Field(
        default=RECV_SKEW_MS, description="Forward skew added to request timestamps"
    )
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")

    model_config = SettingsConfigDict(
        env_prefix="EXCHANGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL so endpoint paths can be appended directly."""
        return v.rstrip("/")


class TradingSettings(BaseSettings):
    """Trading configuration settings."""

    paper_trading: bool = Field(
        default=True, description="Enable paper trading mode"
    )
    qty_fraction: float = Field(
        default=QTY_FRACTION, gt=0, le=1, description="Fraction of balance per trade"
    )
    claim_ttl_seconds: int = Field(
        default=DEFAULT_CLAIM_TTL_SECONDS, gt=0, description="Cycle claim lifetime"
    )
    initial_balance: float = Field(
        default=1000.0, description="Initial base-coin balance for paper trading"
    )
    price_tick: Optional[float] = Field(
        default=None, gt=0, description="Price increment stop and targets are rounded to"
    )

    model_config = SettingsConfigDict(
        env_prefix="TRADING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Logging level")
    format: Literal["json", "pretty"] = Field(
        default="json", description="Log renderer"
    )
    file_path: Optional[str] = Field(
        default=None, description="Optional log file path"
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class Settings(BaseSettings):
    """
    Root settings object handed to the factories.

    Strategy constants that must not vary per deployment live in
    ``candlesync.config.constants`` instead.
    """

    redis: RedisSettings = Field(default_factory=RedisSettings)
    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    trading: TradingSettings = Field(default_factory=TradingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Settings loaded once per process.

    Tests call ``get_settings.cache_clear()`` after changing the environment.
    """
    return Settings()
