"""
Execution coordinator for candlesync.

Turns a state machine ``Decision`` into exchange orders and persists the
result. The order sequence for an entry is:

1. Market entry with the stop-loss attached
2. Reduce-only take-profit at entry +/- 1 ATR for half the size
3. Reduce-only take-profit at entry +/- 3 ATR for the remainder

If a take-profit is rejected the position is flattened with a reduce-only
market close before the error surfaces, so no position is ever left without
both targets. The same close is sent when the store cannot record a filled
entry (``unwind``). Exchange calls are awaited one after another and never
retried.

Failures split into two kinds:

- raised from ``execute``: nothing was changed on the exchange that needs
  recording, the cycle aborts without touching the snapshot
- returned in ``ExecutionOutcome.error``: the outcome must be committed first
  (forced state and facts), then the error raised

Example Usage:
    ```python
    coordinator = ExecutionCoordinator(store, exchange)

    outcome = await coordinator.execute(decision, snapshot, position)
    await coordinator.commit(snapshot.symbol, outcome, marker)
    if outcome.error is not None:
        raise outcome.error
    ```
"""

from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
import math
from typing import Any, Optional

from candlesync.config.constants import (
    MIN_ORDER_QTY,
    QTY_FRACTION,
    STOP_LOSS_ATR_MULT,
    TAKE_PROFIT_1_ATR_MULT,
    TAKE_PROFIT_2_ATR_MULT,
)
from candlesync.data.snapshot import Side, Snapshot, TradeFacts, TradeState
from candlesync.data.store import SnapshotStore
from candlesync.trading.errors import (
    CandlesyncError,
    OrderRejectedError,
    RollbackFailedError,
    UnexpectedStateError,
    ZeroBalanceError,
)
from candlesync.trading.exchange import (
    ExchangeGateway,
    OrderAck,
    OrderSide,
    PaperExchange,
    PositionInfo,
    opposite,
)
from candlesync.trading.state_machine import Action, Decision
from candlesync.utils import get_logger

logger = get_logger(__name__)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class ExecutionOutcome:
    """
    Result of executing one decision.

    Attributes:
        next_state: Trade state to commit
        facts: Trade bookkeeping to commit alongside the state (optional)
        orders: Orders the exchange accepted, in submission order
        error: Error to raise once the outcome has been committed (optional)
    """

    next_state: TradeState
    facts: Optional[TradeFacts] = None
    orders: list[OrderAck] = field(default_factory=list)
    error: Optional[CandlesyncError] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert outcome to dictionary representation."""
        return {
            "next_state": self.next_state.value,
            "facts": None if self.facts is None else self.facts.to_hash(),
            "orders": [order.to_dict() for order in self.orders],
            "error": None if self.error is None else str(self.error),
        }


@dataclass(frozen=True)
class EntryPlan:
    """
    Prices and sizes of a full entry sequence.

    Attributes:
        side: Trade direction
        entry_price: Reference entry price (candle close)
        stop_loss: Stop attached to the market entry
        take_profit_1: Near target (1x ATR)
        take_profit_2: Far target (3x ATR)
        qty: Total entry size
    """

    side: Side
    entry_price: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float
    qty: int

    @property
    def order_side(self) -> OrderSide:
        return "Buy" if self.side == "long" else "Sell"

    @property
    def take_profit_1_qty(self) -> int:
        return self.qty // 2

    @property
    def take_profit_2_qty(self) -> int:
        return self.qty - self.qty // 2

    def facts(self) -> TradeFacts:
        return TradeFacts(
            entry_price=self.entry_price,
            stop_loss=self.stop_loss,
            take_profit_1=self.take_profit_1,
            take_profit_2=self.take_profit_2,
            position_size=float(self.qty),
        )


def base_asset(symbol: str) -> str:
    """Wallet asset that margins ``symbol`` (``BTCUSD`` -> ``BTC``)."""
    return symbol[:3].upper()


def round_to_tick(price: float, tick_size: float) -> float:
    """Nearest multiple of ``tick_size`` (half up), free of float noise."""
    tick = Decimal(str(tick_size))
    steps = (Decimal(str(price)) / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(steps * tick)


def plan_entry(
    side: Side, close: float, atr: float, qty: int, tick_size: Optional[float] = None
) -> EntryPlan:
    """
    Compute stop-loss and take-profit prices around ``close``.

    Args:
        side: Trade direction
        close: Candle close used as the reference entry price
        atr: Candle ATR value
        qty: Entry size
        tick_size: Price increment of the instrument; stop and targets are
            rounded to it when given

    Returns:
        EntryPlan with stop below / targets above the entry for longs, and
        the mirror image for shorts
    """
    direction = 1 if side == "long" else -1
    prices = (
        close - direction * STOP_LOSS_ATR_MULT * atr,
        close + direction * TAKE_PROFIT_1_ATR_MULT * atr,
        close + direction * TAKE_PROFIT_2_ATR_MULT * atr,
    )
    if tick_size:
        prices = tuple(round_to_tick(price, tick_size) for price in prices)
    stop_loss, take_profit_1, take_profit_2 = prices
    return EntryPlan(
        side=side,
        entry_price=close,
        stop_loss=stop_loss,
        take_profit_1=take_profit_1,
        take_profit_2=take_profit_2,
        qty=qty,
    )


# =============================================================================
# Coordinator
# =============================================================================


class ExecutionCoordinator:
    """
    Executes decisions against an exchange gateway and commits the outcome.

    Attributes:
        store: Snapshot store receiving the committed outcome
        exchange: Gateway orders are sent to
        qty_fraction: Fraction of the quote-converted balance put into a trade
        tick_size: Price increment stop and target prices are rounded to
    """

    def __init__(
        self,
        store: SnapshotStore,
        exchange: ExchangeGateway,
        qty_fraction: float = QTY_FRACTION,
        tick_size: Optional[float] = None,
    ) -> None:
        self.store = store
        self.exchange = exchange
        self.qty_fraction = qty_fraction
        self.tick_size = tick_size

    async def execute(
        self, decision: Decision, snapshot: Snapshot, position: PositionInfo
    ) -> ExecutionOutcome:
        """
        Carry out ``decision``.

        Args:
            decision: State machine decision
            snapshot: Snapshot the decision was computed on
            position: Position the exchange reported before the decision

        Returns:
            ExecutionOutcome to commit

        Raises:
            OrderRejectedError: Entry or exit rejected; nothing to commit
            ExchangeError: Balance query failed; nothing to commit
            UnexpectedStateError: Decision cannot be executed on this snapshot
        """
        logger.info(
            "executing_decision",
            symbol=snapshot.symbol,
            action=decision.action.value,
            next_state=decision.next_state.value,
            reason=decision.reason,
        )

        if decision.action.is_entry:
            if position.is_open:
                raise UnexpectedStateError(
                    f"Refusing to enter {snapshot.symbol}: position of {position.size} is open"
                )
            side: Side = "long" if decision.action is Action.ENTER_LONG else "short"
            return await self._enter(decision, snapshot, side)
        if decision.action is Action.EXIT_POSITION:
            return await self._exit(decision, snapshot, position)
        return self._hold(decision, snapshot, position)

    async def commit(self, symbol: str, outcome: ExecutionOutcome, marker: str) -> None:
        """
        Persist state, facts and marker in one store write.

        In paper mode the simulated account goes into the same write.

        Raises:
            TransientStoreError: If the store write fails
        """
        paper_account = None
        if isinstance(self.exchange, PaperExchange):
            paper_account = self.exchange.account_state(symbol)
        await self.store.commit(
            symbol, outcome.next_state, marker, outcome.facts, paper_account=paper_account
        )

    async def unwind(self, symbol: str, outcome: ExecutionOutcome) -> None:
        """
        Close an entry filled in this cycle whose outcome could not be committed.

        Does nothing unless ``outcome`` leaves a position open that one of its
        own orders opened.

        Raises:
            RollbackFailedError: If the closing order is rejected too
        """
        entry = next(
            (o for o in outcome.orders if o.order_type == "Market" and not o.reduce_only),
            None,
        )
        if entry is None or outcome.facts is None or not outcome.next_state.is_open:
            return

        qty = outcome.facts.position_size
        logger.critical("commit_failed_after_entry", symbol=symbol, side=entry.side, qty=qty)
        try:
            ack = await self.exchange.place_market_order(
                symbol, opposite(entry.side), qty, reduce_only=True
            )
        except OrderRejectedError as e:
            logger.critical(
                "rollback_failed", symbol=symbol, qty=qty, stage="commit", error=e.reason
            )
            raise RollbackFailedError(
                f"commit failed and flatten rejected ({e.reason})", e.ret_code
            ) from e

        outcome.orders.append(ack)
        logger.critical("position_flattened", symbol=symbol, qty=qty, stage="commit")

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _enter(self, decision: Decision, snapshot: Snapshot, side: Side) -> ExecutionOutcome:
        symbol = snapshot.symbol
        if snapshot.close is None or snapshot.atr is None:
            raise UnexpectedStateError(f"Cannot size an entry for {symbol} without close and ATR")

        asset = base_asset(symbol)
        balance = await self.exchange.get_balance(asset)
        qty = math.floor(balance * snapshot.close * self.qty_fraction)
        if qty < MIN_ORDER_QTY:
            logger.warning(
                "entry_skipped_zero_balance",
                symbol=symbol,
                asset=asset,
                balance=balance,
                qty=qty,
            )
            return ExecutionOutcome(
                TradeState.FLAT_FRESH, error=ZeroBalanceError(symbol, qty, balance)
            )

        plan = plan_entry(side, snapshot.close, snapshot.atr, qty, self.tick_size)
        try:
            entry_ack = await self.exchange.place_market_order(
                symbol, plan.order_side, plan.qty, stop_loss=plan.stop_loss
            )
        except OrderRejectedError as e:
            logger.error("entry_rejected", symbol=symbol, side=side, qty=qty, error=e.reason)
            raise e.at_stage("entry") from e

        logger.info(
            "entry_filled",
            symbol=symbol,
            side=side,
            qty=qty,
            entry_price=plan.entry_price,
            stop_loss=plan.stop_loss,
        )

        orders = [entry_ack]
        targets = (
            ("take_profit_1", plan.take_profit_1, plan.take_profit_1_qty),
            ("take_profit_2", plan.take_profit_2, plan.take_profit_2_qty),
        )
        for stage, price, size in targets:
            try:
                ack = await self.exchange.place_take_profit(
                    symbol, opposite(plan.order_side), price, size
                )
            except OrderRejectedError as e:
                return await self._flatten(decision, plan, symbol, orders, e.at_stage(stage))
            orders.append(ack)

        logger.info(
            "take_profits_placed",
            symbol=symbol,
            take_profit_1=plan.take_profit_1,
            take_profit_2=plan.take_profit_2,
        )
        return ExecutionOutcome(decision.next_state, plan.facts(), orders)

    async def _flatten(
        self,
        decision: Decision,
        plan: EntryPlan,
        symbol: str,
        orders: list[OrderAck],
        failure: OrderRejectedError,
    ) -> ExecutionOutcome:
        logger.error(
            "take_profit_rejected",
            symbol=symbol,
            stage=failure.stage,
            error=failure.reason,
        )
        try:
            ack = await self.exchange.place_market_order(
                symbol, opposite(plan.order_side), plan.qty, reduce_only=True
            )
        except OrderRejectedError as e:
            logger.critical(
                "rollback_failed",
                symbol=symbol,
                qty=plan.qty,
                stage=failure.stage,
                error=e.reason,
            )
            return ExecutionOutcome(
                decision.next_state,
                plan.facts(),
                orders,
                RollbackFailedError(
                    f"{failure.stage} rejected ({failure.reason}) and flatten rejected "
                    f"({e.reason})",
                    e.ret_code,
                ),
            )

        orders.append(ack)
        logger.warning("position_flattened", symbol=symbol, qty=plan.qty)
        return ExecutionOutcome(TradeState.FLAT_FRESH, None, orders, failure)

    async def _exit(
        self, decision: Decision, snapshot: Snapshot, position: PositionInfo
    ) -> ExecutionOutcome:
        symbol = snapshot.symbol
        size = position.size if position.is_open else snapshot.position_size
        if not size:
            raise UnexpectedStateError(f"No position size known for {symbol}")

        if position.side is not None:
            close_side = opposite(position.side)
        elif snapshot.trade_state.side == "long":
            close_side = "Sell"
        elif snapshot.trade_state.side == "short":
            close_side = "Buy"
        else:
            raise UnexpectedStateError(f"Cannot tell the side of the {symbol} position")

        try:
            ack = await self.exchange.place_market_order(
                symbol, close_side, size, reduce_only=True
            )
        except OrderRejectedError as e:
            logger.error("exit_rejected", symbol=symbol, qty=size, error=e.reason)
            raise e.at_stage("exit") from e

        logger.info(
            "position_exited",
            symbol=symbol,
            qty=size,
            reason=decision.reason,
            next_state=decision.next_state.value,
        )
        return ExecutionOutcome(decision.next_state, None, [ack])

    def _hold(
        self, decision: Decision, snapshot: Snapshot, position: PositionInfo
    ) -> ExecutionOutcome:
        facts = None
        entering_tp1 = decision.next_state.tp1_hit and not snapshot.trade_state.tp1_hit
        if entering_tp1 and position.is_open:
            recorded = snapshot.facts()
            if recorded is not None:
                facts = replace(recorded, position_size=position.size)
                logger.info(
                    "partial_exit_recorded",
                    symbol=snapshot.symbol,
                    position_size=position.size,
                )
        return ExecutionOutcome(decision.next_state, facts)
