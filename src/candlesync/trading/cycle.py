"""
Decision cycle orchestration.

One call to ``DecisionCycle.run`` handles one inbound partial update:

1. Synchronization barrier (merge + alignment gate + claim)
2. Credentials, fetched once
3. Exchange position query
4. State machine ``transition``
5. Execution coordinator ``execute`` + ``commit``

Anything that fails before the commit releases the cycle claim and
re-raises, leaving the snapshot as the barrier merged it so a redelivered
update can retry the candle. If the commit itself fails after an entry was
filled, the entry is closed again before the error surfaces.

In paper mode the simulated account is read from the store at the start of
the cycle and written back by the commit, so positions carry over between
alerts handled by different processes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from candlesync.config.settings import Settings
from candlesync.data.snapshot import PartialUpdate, TradeState
from candlesync.data.store import SnapshotStore
from candlesync.trading.barrier import BarrierResult, SynchronizationBarrier
from candlesync.trading.errors import TransientStoreError, UnexpectedStateError
from candlesync.trading.exchange import ExchangeGateway, PaperExchange, create_exchange
from candlesync.trading.executor import ExecutionCoordinator, ExecutionOutcome
from candlesync.trading.secrets import (
    Credentials,
    SecretProvider,
    StaticSecretProvider,
    create_secret_provider,
)
from candlesync.trading.state_machine import Decision, transition
from candlesync.utils import add_context, get_logger

logger = get_logger(__name__)

ExchangeFactory = Callable[[Credentials], ExchangeGateway]


@dataclass
class CycleResult:
    """
    What one decision cycle did.

    Attributes:
        symbol: Instrument symbol
        proceeded: Whether the barrier let this update run a decision
        previous_state: Trade state stored before the cycle
        marker: Candle minute the cycle ran for (when aligned)
        decision: State machine decision (when proceeded)
        outcome: Committed execution outcome (when proceeded)
        reason: Why the barrier stayed closed (when not proceeded)
    """

    symbol: str
    proceeded: bool
    previous_state: TradeState
    marker: Optional[str] = None
    decision: Optional[Decision] = None
    outcome: Optional[ExecutionOutcome] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary representation."""
        return {
            "symbol": self.symbol,
            "proceeded": self.proceeded,
            "previous_state": self.previous_state.value,
            "marker": self.marker,
            "decision": None if self.decision is None else self.decision.to_dict(),
            "outcome": None if self.outcome is None else self.outcome.to_dict(),
            "reason": self.reason,
        }


class DecisionCycle:
    """
    Wires barrier, state machine and execution coordinator together.

    Attributes:
        store: Snapshot store shared by barrier and coordinator
        barrier: Synchronization barrier
        secrets: Credential source
        exchange_factory: Builds a gateway from credentials
        secret_id: Identifier the credentials are stored under
        qty_fraction: Fraction of the balance put into a trade
        tick_size: Price increment stop and targets are rounded to (optional)
    """

    def __init__(
        self,
        store: SnapshotStore,
        barrier: SynchronizationBarrier,
        secrets: SecretProvider,
        exchange_factory: ExchangeFactory,
        secret_id: str,
        qty_fraction: float,
        tick_size: Optional[float] = None,
    ) -> None:
        self.store = store
        self.barrier = barrier
        self.secrets = secrets
        self.exchange_factory = exchange_factory
        self.secret_id = secret_id
        self.qty_fraction = qty_fraction
        self.tick_size = tick_size

    async def run(self, update: PartialUpdate) -> CycleResult:
        """
        Handle one partial update end to end.

        Args:
            update: Feed fields delivered by one alert

        Returns:
            CycleResult describing what happened

        Raises:
            CandlesyncError: Any cycle failure; see ``candlesync.trading.errors``
        """
        with add_context(symbol=update.symbol):
            gate = await self.barrier.reconcile(update)
            if not gate.proceed:
                return CycleResult(
                    symbol=update.symbol,
                    proceeded=False,
                    previous_state=gate.snapshot.trade_state,
                    marker=gate.marker,
                    reason=gate.reason,
                )

            with add_context(minute=gate.marker):
                result = await self._decide(gate)

            if result.outcome is not None and result.outcome.error is not None:
                raise result.outcome.error
            return result

    async def _decide(self, gate: BarrierResult) -> CycleResult:
        symbol = gate.snapshot.symbol
        marker = gate.marker or ""
        snapshot = gate.snapshot
        committed = False
        try:
            credentials = await self.secrets.get_credentials(self.secret_id)
            exchange = self.exchange_factory(credentials)
            try:
                if isinstance(exchange, PaperExchange):
                    await self._load_paper_account(exchange, gate)

                position = await exchange.get_position(symbol)
                decision = transition(snapshot.trade_state, snapshot, gate.prior, position.size)
                logger.info(
                    "decision_made",
                    previous_state=snapshot.trade_state.value,
                    next_state=decision.next_state.value,
                    action=decision.action.value,
                    reason=decision.reason,
                    position_size=position.size,
                )

                coordinator = ExecutionCoordinator(
                    self.store, exchange, self.qty_fraction, self.tick_size
                )
                outcome = await coordinator.execute(decision, snapshot, position)
                try:
                    await coordinator.commit(symbol, outcome, marker)
                except TransientStoreError:
                    await coordinator.unwind(symbol, outcome)
                    raise
                committed = True
            finally:
                await exchange.close()
        except UnexpectedStateError as e:
            logger.error("unexpected_state", trade_state=snapshot.trade_state.value, error=str(e))
            await self._abort(symbol, marker, committed)
            raise
        except Exception as e:
            logger.error("cycle_aborted", error_type=type(e).__name__, error=str(e))
            await self._abort(symbol, marker, committed)
            raise

        await self._release(symbol, marker)

        if outcome.error is not None:
            logger.error(
                "cycle_committed_with_error",
                trade_state=outcome.next_state.value,
                error_type=type(outcome.error).__name__,
                error=str(outcome.error),
            )
        else:
            logger.info("cycle_complete", trade_state=outcome.next_state.value)

        return CycleResult(
            symbol=symbol,
            proceeded=True,
            previous_state=snapshot.trade_state,
            marker=marker,
            decision=decision,
            outcome=outcome,
        )

    async def _abort(self, symbol: str, marker: str, committed: bool) -> None:
        if not committed:
            await self._release(symbol, marker)

    async def _release(self, symbol: str, marker: str) -> None:
        try:
            await self.barrier.release(symbol, marker)
        except TransientStoreError as e:
            # claim expires with its TTL
            logger.error("claim_release_failed", minute=marker, error=str(e))

    async def _load_paper_account(self, exchange: PaperExchange, gate: BarrierResult) -> None:
        """Restore the stored paper account, then replay the candle against it."""
        snapshot = gate.snapshot
        account = await self.store.get_paper_account(snapshot.symbol)
        if account is not None:
            exchange.restore_account(snapshot.symbol, account)
        if snapshot.high is None or snapshot.low is None or snapshot.close is None:
            return
        exchange.mark_candle(snapshot.symbol, snapshot.high, snapshot.low, snapshot.close)


def create_decision_cycle(
    settings: Settings,
    store: SnapshotStore,
    secrets: Optional[SecretProvider] = None,
    paper_exchange: Optional[PaperExchange] = None,
) -> DecisionCycle:
    """
    Factory function to create a DecisionCycle from settings.

    Args:
        settings: Application settings
        store: Connected snapshot store
        secrets: Credential source (default: chosen by ``exchange.secret_source``)
        paper_exchange: Paper exchange to keep using across cycles in paper mode

    Returns:
        Configured DecisionCycle
    """
    if settings.trading.paper_trading:
        if paper_exchange is None:
            paper_exchange = PaperExchange(initial_balance=settings.trading.initial_balance)
        if secrets is None:
            secrets = StaticSecretProvider(Credentials(key="paper", secret="paper"))

    def exchange_factory(credentials: Credentials) -> ExchangeGateway:
        return create_exchange(settings, credentials, paper_exchange)

    return DecisionCycle(
        store=store,
        barrier=SynchronizationBarrier(store, settings.trading.claim_ttl_seconds),
        secrets=secrets or create_secret_provider(settings.exchange),
        exchange_factory=exchange_factory,
        secret_id=settings.exchange.secret_id,
        qty_fraction=settings.trading.qty_fraction,
        tick_size=settings.trading.price_tick,
    )
