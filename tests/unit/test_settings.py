"""
Unit tests for configuration settings.
"""

from pydantic import SecretStr, ValidationError
import pytest

from candlesync.config import get_settings
from candlesync.config.constants import DEFAULT_CLAIM_TTL_SECONDS, QTY_FRACTION, RECV_SKEW_MS
from candlesync.config.settings import (
    ExchangeSettings,
    RedisSettings,
    TradingSettings,
)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Reset the settings singleton around each test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.unit
class TestRedisSettings:
    """Tests for RedisSettings."""

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("REDIS_KEY_PREFIX", "staging")

        assert RedisSettings().key_prefix == "staging"


@pytest.mark.unit
class TestExchangeSettings:
    """Tests for ExchangeSettings."""

    def test_defaults(self, monkeypatch):
        for name in ("EXCHANGE_TESTNET", "EXCHANGE_RECV_SKEW_MS", "EXCHANGE_SECRET_SOURCE"):
            monkeypatch.delenv(name, raising=False)

        settings = ExchangeSettings(_env_file=None)

        assert settings.testnet is True
        assert settings.recv_skew_ms == RECV_SKEW_MS
        assert settings.secret_source == "env"

    def test_base_url_trailing_slash(self):
        assert ExchangeSettings(base_url="https://api.bybit.com/").base_url == (
            "https://api.bybit.com"
        )

    def test_secret_source_is_validated(self):
        with pytest.raises(ValidationError):
            ExchangeSettings(secret_source="vault")

    def test_secrets_are_masked(self):
        settings = ExchangeSettings(api_secret=SecretStr("hunter2"))

        assert "hunter2" not in repr(settings)


@pytest.mark.unit
class TestTradingSettings:
    """Tests for TradingSettings."""

    def test_defaults(self, monkeypatch):
        for name in ("TRADING_QTY_FRACTION", "TRADING_CLAIM_TTL_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        settings = TradingSettings(_env_file=None)

        assert settings.qty_fraction == QTY_FRACTION
        assert settings.claim_ttl_seconds == DEFAULT_CLAIM_TTL_SECONDS

    @pytest.mark.parametrize("fraction", [0.0, 1.5])
    def test_qty_fraction_bounds(self, fraction):
        with pytest.raises(ValidationError):
            TradingSettings(qty_fraction=fraction)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("TRADING_PAPER_TRADING", "false")

        assert TradingSettings().paper_trading is False

    def test_price_tick(self, monkeypatch):
        monkeypatch.delenv("TRADING_PRICE_TICK", raising=False)
        assert TradingSettings(_env_file=None).price_tick is None

        monkeypatch.setenv("TRADING_PRICE_TICK", "0.5")
        assert TradingSettings(_env_file=None).price_tick == 0.5

        with pytest.raises(ValidationError):
            TradingSettings(price_tick=0)


@pytest.mark.unit
class TestGetSettings:
    """Tests for the settings singleton."""

    def test_cached(self):
        assert get_settings() is get_settings()
