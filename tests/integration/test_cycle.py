"""
Integration tests for the decision cycle.

Drives ``DecisionCycle.run`` with the four feed updates of consecutive candles
against the in-memory store, using the paper exchange for a full trade
lifecycle and a mock gateway for failure paths.
"""

from typing import Any
from unittest.mock import AsyncMock, call, patch

import pytest

from candlesync.data.snapshot import PartialUpdate, SnapshotField, TradeState
from candlesync.trading.barrier import SynchronizationBarrier
from candlesync.trading.cycle import DecisionCycle, create_decision_cycle
from candlesync.trading.errors import (
    CredentialError,
    OrderRejectedError,
    RollbackFailedError,
    TransientStoreError,
    UnexpectedStateError,
    ZeroBalanceError,
)
from candlesync.trading.exchange import PaperExchange, PositionInfo
from candlesync.trading.secrets import Credentials, StaticSecretProvider
from candlesync.trading.state_machine import Action
from tests.conftest import make_ack

# =============================================================================
# Helpers
# =============================================================================


def candle(minute: str, symbol: str = "BTCUSD", **values: Any) -> list[PartialUpdate]:
    """The four feed updates of one closed candle (long setup unless overridden)."""
    ts = f"2024-03-01T12:{minute}:00Z"
    v = {
        "trend_long": 2.0,
        "trend_short": 1.0,
        "baseline": 103.0,
        "close": 105.0,
        "high": 106.0,
        "low": 104.0,
        "atr": 3.0,
        "volume_long": 5.0,
        "volume_short": 2.0,
    }
    v.update(values)
    return [
        PartialUpdate(
            symbol,
            {
                SnapshotField.TREND_LONG: v["trend_long"],
                SnapshotField.TREND_SHORT: v["trend_short"],
                SnapshotField.TREND_TIMESTAMP: ts,
            },
        ),
        PartialUpdate(
            symbol,
            {
                SnapshotField.BASELINE: v["baseline"],
                SnapshotField.CLOSE: v["close"],
                SnapshotField.HIGH: v["high"],
                SnapshotField.LOW: v["low"],
                SnapshotField.BASELINE_TIMESTAMP: ts,
            },
        ),
        PartialUpdate(symbol, {SnapshotField.ATR: v["atr"], SnapshotField.ATR_TIMESTAMP: ts}),
        PartialUpdate(
            symbol,
            {
                SnapshotField.VOLUME_LONG: v["volume_long"],
                SnapshotField.VOLUME_SHORT: v["volume_short"],
                SnapshotField.VOLUME_TIMESTAMP: ts,
            },
        ),
    ]


async def deliver(cycle: DecisionCycle, updates: list[PartialUpdate]):
    results = [await cycle.run(update) for update in updates]
    assert [r.proceeded for r in results[:-1]] == [False] * (len(updates) - 1)
    return results[-1]


@pytest.fixture
def paper() -> PaperExchange:
    return PaperExchange(initial_balance=0.4)


@pytest.fixture
def paper_cycle(test_settings, store, paper) -> DecisionCycle:
    return create_decision_cycle(test_settings, store, paper_exchange=paper)


@pytest.fixture
def mock_cycle(store, mock_exchange) -> DecisionCycle:
    return DecisionCycle(
        store=store,
        barrier=SynchronizationBarrier(store, claim_ttl=600),
        secrets=StaticSecretProvider(Credentials("key", "secret")),
        exchange_factory=lambda credentials: mock_exchange,
        secret_id="creds/bybit",
        qty_fraction=0.1,
    )


# =============================================================================
# Paper Trade Lifecycle
# =============================================================================


@pytest.mark.integration
class TestPaperLifecycle:
    """Entry, TP1 and baseline exit across three candles."""

    @pytest.mark.asyncio
    async def test_full_trade(self, paper_cycle, paper, store):
        # Candle 1: clean long setup -> entry with stop and two targets
        result = await deliver(paper_cycle, candle("15"))

        assert result.proceeded is True
        assert result.decision.action is Action.ENTER_LONG
        snapshot = await store.get("BTCUSD")
        assert snapshot.trade_state is TradeState.IN_LONG
        assert snapshot.last_processed_marker == "15"
        assert snapshot.stop_loss == 100.5
        assert snapshot.position_size == 4.0
        assert (await paper.get_position("BTCUSD")).size == 4.0
        assert [o.price for o in paper.resting["BTCUSD"]] == [108.0, 114.0]

        # Candle 2: high tags TP1, half the position is taken off
        result = await deliver(paper_cycle, candle("30", high=108.5, low=105.0, close=107.0))

        assert result.decision.next_state is TradeState.IN_LONG_TP1_HIT
        snapshot = await store.get("BTCUSD")
        assert snapshot.trade_state is TradeState.IN_LONG_TP1_HIT
        assert snapshot.position_size == 2.0

        # Candle 3: close back under the baseline -> exit the remainder
        result = await deliver(paper_cycle, candle("45", high=104.0, low=101.5, close=102.0))

        assert result.decision.action is Action.EXIT_POSITION
        snapshot = await store.get("BTCUSD")
        assert snapshot.trade_state is TradeState.FLAT_FRESH
        assert snapshot.last_processed_marker == "45"
        assert (await paper.get_position("BTCUSD")).is_open is False

    @pytest.mark.asyncio
    async def test_stop_out_goes_lost_to_baseline(self, paper_cycle, paper, store):
        await deliver(paper_cycle, candle("15"))

        result = await deliver(paper_cycle, candle("30", high=104.0, low=100.0, close=103.5))

        assert result.decision.reason == "stopped_out"
        assert (await store.get("BTCUSD")).trade_state is TradeState.LOST_TO_BASELINE

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_ignored(self, paper_cycle, paper, store):
        updates = candle("15")
        await deliver(paper_cycle, updates)
        orders_before = len(paper.order_history)

        duplicate = await paper_cycle.run(updates[-1])

        assert duplicate.proceeded is False
        assert duplicate.reason == "already_processed"
        assert len(paper.order_history) == orders_before

    @pytest.mark.asyncio
    async def test_out_of_order_feeds(self, paper_cycle, store):
        updates = candle("15")

        result = await deliver(paper_cycle, [updates[2], updates[0], updates[3], updates[1]])

        assert result.proceeded is True
        assert result.marker == "15"

    @pytest.mark.asyncio
    async def test_instruments_do_not_interfere(self, paper_cycle, store):
        await deliver(paper_cycle, candle("15", symbol="BTCUSD"))

        result = await paper_cycle.run(candle("15", symbol="ETHUSD")[0])

        assert result.proceeded is False
        assert (await store.get("ETHUSD")).trade_state is TradeState.FLAT_FRESH


# =============================================================================
# Failure Paths
# =============================================================================


@pytest.mark.integration
class TestCycleFailures:
    """Failures before and after the commit point."""

    @pytest.mark.asyncio
    async def test_entry_rejected_leaves_state_and_releases_claim(
        self, mock_cycle, mock_exchange, store, fake_redis
    ):
        mock_exchange.place_market_order.side_effect = OrderRejectedError(None, "no margin", 30031)
        updates = candle("15")

        with pytest.raises(OrderRejectedError) as exc_info:
            await deliver(mock_cycle, updates)

        assert exc_info.value.stage == "entry"
        snapshot = await store.get("BTCUSD")
        assert snapshot.trade_state is TradeState.FLAT_FRESH
        assert snapshot.last_processed_marker is None
        assert store.claim_key("BTCUSD", "15") not in fake_redis.strings
        mock_exchange.close.assert_awaited()

        # A redelivery retries the same candle
        mock_exchange.place_market_order.side_effect = None
        mock_exchange.place_market_order.return_value = make_ack(qty=4, stop_loss=100.5)
        retry = await mock_cycle.run(updates[-1])
        assert retry.proceeded is True
        assert (await store.get("BTCUSD")).trade_state is TradeState.IN_LONG

    @pytest.mark.asyncio
    async def test_zero_balance_commits_flat_then_raises(
        self, mock_cycle, mock_exchange, store, fake_redis
    ):
        mock_exchange.get_balance.return_value = 0.0

        with pytest.raises(ZeroBalanceError):
            await deliver(mock_cycle, candle("15"))

        snapshot = await store.get("BTCUSD")
        assert snapshot.trade_state is TradeState.FLAT_FRESH
        assert snapshot.last_processed_marker == "15"
        assert store.claim_key("BTCUSD", "15") not in fake_redis.strings
        mock_exchange.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_take_profit_failure_flattens_and_commits(
        self, mock_cycle, mock_exchange, store
    ):
        mock_exchange.place_take_profit.side_effect = OrderRejectedError(None, "bad price")

        with pytest.raises(OrderRejectedError) as exc_info:
            await deliver(mock_cycle, candle("15"))

        assert exc_info.value.stage == "take_profit_1"
        assert mock_exchange.place_market_order.await_count == 2
        assert (await store.get("BTCUSD")).trade_state is TradeState.FLAT_FRESH

    @pytest.mark.asyncio
    async def test_missing_credentials(self, store, mock_exchange, fake_redis):
        factory = AsyncMock()
        cycle = DecisionCycle(
            store=store,
            barrier=SynchronizationBarrier(store),
            secrets=StaticSecretProvider(Credentials("", "")),
            exchange_factory=factory,
            secret_id="creds/bybit",
            qty_fraction=0.1,
        )

        with pytest.raises(CredentialError):
            await deliver(cycle, candle("15"))

        factory.assert_not_called()
        assert store.claim_key("BTCUSD", "15") not in fake_redis.strings

    @pytest.mark.asyncio
    async def test_position_without_trade_state(self, mock_cycle, mock_exchange, store):
        mock_exchange.get_position.return_value = PositionInfo("BTCUSD", "Buy", 4.0)

        with pytest.raises(UnexpectedStateError):
            await deliver(mock_cycle, candle("15"))

        assert (await store.get("BTCUSD")).last_processed_marker is None
        mock_exchange.place_market_order.assert_not_awaited()


# =============================================================================
# Commit Failures
# =============================================================================


@pytest.mark.integration
class TestCommitFailure:
    """Store failures at and after the commit."""

    @pytest.mark.asyncio
    async def test_filled_entry_is_closed_before_raising(
        self, mock_cycle, mock_exchange, store, fake_redis
    ):
        with patch.object(store, "commit", AsyncMock(side_effect=TransientStoreError("down"))):
            with pytest.raises(TransientStoreError):
                await deliver(mock_cycle, candle("15"))

        assert mock_exchange.place_market_order.await_count == 2
        assert mock_exchange.place_market_order.await_args == call(
            "BTCUSD", "Sell", 4.0, reduce_only=True
        )
        snapshot = await store.get("BTCUSD")
        assert snapshot.trade_state is TradeState.FLAT_FRESH
        assert snapshot.last_processed_marker is None
        assert store.claim_key("BTCUSD", "15") not in fake_redis.strings

    @pytest.mark.asyncio
    async def test_rejected_close_surfaces_rollback_failure(self, mock_cycle, mock_exchange, store):
        mock_exchange.place_market_order.side_effect = [
            make_ack(qty=4, stop_loss=100.5),
            OrderRejectedError(None, "reduce-only rejected", 110017),
        ]

        with patch.object(store, "commit", AsyncMock(side_effect=TransientStoreError("down"))):
            with pytest.raises(RollbackFailedError) as exc_info:
                await deliver(mock_cycle, candle("15"))

        assert exc_info.value.ret_code == 110017
        assert mock_exchange.place_market_order.await_count == 2

    @pytest.mark.asyncio
    async def test_paper_account_not_stored_and_redelivery_reenters(
        self, test_settings, store, fake_redis
    ):
        updates = candle("15")

        with patch.object(store, "commit", AsyncMock(side_effect=TransientStoreError("down"))):
            with pytest.raises(TransientStoreError):
                await deliver(create_decision_cycle(test_settings, store), updates)

        assert store.paper_key("BTCUSD") not in fake_redis.strings

        retry = await create_decision_cycle(test_settings, store).run(updates[-1])

        assert retry.proceeded is True
        assert (await store.get("BTCUSD")).trade_state is TradeState.IN_LONG
        account = await store.get_paper_account("BTCUSD")
        assert account["position"]["size"] == 10.0

    @pytest.mark.asyncio
    async def test_failed_release_keeps_original_error(self, mock_cycle, mock_exchange, store):
        mock_exchange.place_market_order.side_effect = OrderRejectedError(None, "no margin", 30031)

        with patch.object(store, "release", AsyncMock(side_effect=TransientStoreError("down"))):
            with pytest.raises(OrderRejectedError):
                await deliver(mock_cycle, candle("15"))

    @pytest.mark.asyncio
    async def test_failed_release_after_commit_is_not_raised(self, mock_cycle, store):
        with patch.object(store, "release", AsyncMock(side_effect=TransientStoreError("down"))):
            result = await deliver(mock_cycle, candle("15"))

        assert result.proceeded is True
        assert (await store.get("BTCUSD")).trade_state is TradeState.IN_LONG
