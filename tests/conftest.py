"""
Shared pytest fixtures for the candlesync test suite.

This module provides fixtures for:
- An in-memory Redis double (hashes, SET NX EX, MULTI/EXEC pipelines)
- A SnapshotStore bound to that double
- Snapshot builders for the canonical decision scenarios
- Exchange mock clients
- Test settings overrides
"""

from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

from pydantic import SecretStr
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from candlesync.config import Settings
from candlesync.config.settings import (
    ExchangeSettings,
    LoggingSettings,
    RedisSettings,
    TradingSettings,
)
from candlesync.data.snapshot import Snapshot, TradeState
from candlesync.data.store import SnapshotStore
from candlesync.trading.exchange import OrderAck, PositionInfo

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow-running tests")
    config.addinivalue_line("markers", "live: Tests requiring live API access")


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Override settings for testing environment."""
    return Settings(
        redis=RedisSettings(host="localhost", port=6379, db=1, key_prefix="test"),
        exchange=ExchangeSettings(
            testnet_api_key=SecretStr("test-api-key"),
            testnet_api_secret=SecretStr("test-api-secret"),
            testnet=True,
        ),
        trading=TradingSettings(paper_trading=True, initial_balance=1.0),
        logging=LoggingSettings(level="DEBUG"),
    )


# ============================================================================
# Redis Fixtures
# ============================================================================


class FakePipeline:
    """Queues commands and applies them together on ``execute``."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple, dict]] = []

    def hset(self, key: str, mapping: dict[str, str]) -> "FakePipeline":
        self._commands.append(("hset", (key,), {"mapping": mapping}))
        return self

    def hgetall(self, key: str) -> "FakePipeline":
        self._commands.append(("hgetall", (key,), {}))
        return self

    def set(self, key: str, value: Any) -> "FakePipeline":
        self._commands.append(("set", (key, value), {}))
        return self

    async def execute(self) -> list[Any]:
        self._redis.check("pipeline")
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakeRedis:
    """
    In-memory stand-in for ``redis.asyncio.Redis`` (decode_responses=True).

    ``fail_on`` names operations that raise a connection error, to exercise
    the store's error mapping.
    """

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, Any] = {}
        self.expiry: dict[str, int] = {}
        self.fail_on: set[str] = set()
        self.closed = False

    def check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise RedisConnectionError(f"{operation} failed")

    async def ping(self) -> bool:
        self.check("ping")
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def hgetall(self, key: str) -> dict[str, str]:
        self.check("hgetall")
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.check("hset")
        bucket = self.hashes.setdefault(key, {})
        added = len(set(mapping) - set(bucket))
        bucket.update({k: str(v) for k, v in mapping.items()})
        return added

    async def get(self, key: str) -> Optional[Any]:
        self.check("get")
        return self.strings.get(key)

    async def set(
        self, key: str, value: Any, nx: bool = False, ex: Optional[int] = None
    ) -> Optional[bool]:
        self.check("set")
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self.check("delete")
        removed = 0
        for key in keys:
            removed += int(self.strings.pop(key, None) is not None)
            removed += int(self.hashes.pop(key, None) is not None)
            self.expiry.pop(key, None)
        return removed

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Create an in-memory Redis double."""
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> SnapshotStore:
    """Create a SnapshotStore bound to the in-memory Redis double."""
    return SnapshotStore(key_prefix="test", client=fake_redis)


# ============================================================================
# Snapshot Fixtures
# ============================================================================

CANDLE_TS = "2024-03-01T12:15:00Z"


def build_snapshot(symbol: str = "BTCUSD", **overrides: Any) -> Snapshot:
    """
    Snapshot of a long setup: trend long, close above the baseline without
    overshooting it, volume confirming, all four feeds on minute 15.
    """
    values: dict[str, Any] = {
        "trend_long": 2.0,
        "trend_short": 1.0,
        "trend_timestamp": CANDLE_TS,
        "baseline": 103.0,
        "close": 105.0,
        "high": 106.0,
        "low": 104.0,
        "baseline_timestamp": CANDLE_TS,
        "atr": 3.0,
        "atr_timestamp": CANDLE_TS,
        "volume_long": 5.0,
        "volume_short": 2.0,
        "volume_timestamp": CANDLE_TS,
        "trade_state": TradeState.FLAT_FRESH,
    }
    values.update(overrides)
    return Snapshot(symbol=symbol, **values)


@pytest.fixture
def make_snapshot() -> Callable[..., Snapshot]:
    """Factory for snapshots; keyword arguments override the long setup."""
    return build_snapshot


@pytest.fixture
def open_long_snapshot() -> Snapshot:
    """Snapshot of an IN_LONG trade entered at 105 with ATR 3."""
    return build_snapshot(
        trade_state=TradeState.IN_LONG,
        entry_price=105.0,
        stop_loss=100.5,
        take_profit_1=108.0,
        take_profit_2=114.0,
        position_size=12.0,
    )


# ============================================================================
# Exchange Fixtures
# ============================================================================


def make_ack(side: str = "Buy", order_type: str = "Market", qty: float = 12, **kwargs: Any) -> OrderAck:
    return OrderAck(
        order_id=kwargs.pop("order_id", "order-1"),
        symbol=kwargs.pop("symbol", "BTCUSD"),
        side=side,
        order_type=order_type,
        qty=qty,
        **kwargs,
    )


@pytest.fixture
def mock_exchange() -> MagicMock:
    """Create a mock exchange gateway: 0.4 BTC balance, flat position, every order accepted."""
    exchange = MagicMock()
    exchange.get_balance = AsyncMock(return_value=0.4)
    exchange.get_position = AsyncMock(return_value=PositionInfo.flat("BTCUSD"))
    exchange.place_market_order = AsyncMock(
        side_effect=lambda symbol, side, qty, stop_loss=None, reduce_only=False: make_ack(
            side=side, qty=qty, stop_loss=stop_loss, reduce_only=reduce_only, symbol=symbol
        )
    )
    exchange.place_take_profit = AsyncMock(
        side_effect=lambda symbol, side, price, qty: make_ack(
            side=side, order_type="Limit", qty=qty, price=price, reduce_only=True, symbol=symbol
        )
    )
    exchange.close = AsyncMock()
    return exchange
