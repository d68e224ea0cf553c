"""
Trade lifecycle state machine.

``transition`` is a pure function of the stored trade state, the merged
snapshot of the candle just closed, the snapshot as it stood before that
merge, and the position size the exchange reports. It never performs I/O;
the execution coordinator carries out whatever action it returns.

State overview (exchange position open):

    IN_<SIDE>          baseline crossed against   -> EXIT, FLAT_FRESH if the extreme
                                                     reached TP1 else LOST_TO_BASELINE
                       extreme reached TP1        -> IN_<SIDE>_TP1_HIT
                       trend flipped              -> EXIT, FLAT_FRESH
    IN_<SIDE>_TP1_HIT  baseline crossed against,
                       close back past entry,
                       or trend flipped           -> EXIT, FLAT_FRESH

State overview (no exchange position):

    FLAT_FRESH, PENDING_ATR_*   entry rules
    CONTINUATION_PENDING        continuation rules
    LOST_TO_BASELINE            entry rules once trend or volume reverses
    IN_*                        the position was closed by the exchange:
                                clean TP2 close -> CONTINUATION_PENDING / FLAT_FRESH
                                (evaluated again in the same call),
                                anything else   -> LOST_TO_BASELINE

Example Usage:
    ```python
    decision = transition(TradeState.FLAT_FRESH, current, prior, position_size=0.0)
    if decision.action is Action.ENTER_LONG:
        ...
    ```
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from candlesync.config.constants import OVERSHOOT_ATR_MULT
from candlesync.data.snapshot import Side, Snapshot, TradeState
from candlesync.trading.errors import UnexpectedStateError


class Action(str, Enum):
    """Trade action requested from the execution coordinator."""

    NONE = "NONE"
    ENTER_LONG = "ENTER_LONG"
    ENTER_SHORT = "ENTER_SHORT"
    EXIT_POSITION = "EXIT_POSITION"

    @property
    def is_entry(self) -> bool:
        return self in (Action.ENTER_LONG, Action.ENTER_SHORT)


@dataclass(frozen=True)
class Decision:
    """
    Outcome of one state machine evaluation.

    Attributes:
        next_state: State to persist once the action has been carried out
        action: Trade action to execute
        reason: Short machine-readable explanation, used in logs
    """

    next_state: TradeState
    action: Action = Action.NONE
    reason: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "next_state": self.next_state.value,
            "action": self.action.value,
            "reason": self.reason,
        }


_IN = {"long": TradeState.IN_LONG, "short": TradeState.IN_SHORT}
_TP1_HIT = {"long": TradeState.IN_LONG_TP1_HIT, "short": TradeState.IN_SHORT_TP1_HIT}
_PENDING = {"long": TradeState.PENDING_ATR_LONG, "short": TradeState.PENDING_ATR_SHORT}
_CONFIRMED = {
    "long": TradeState.PENDING_ATR_LONG_CONFIRMED,
    "short": TradeState.PENDING_ATR_SHORT_CONFIRMED,
}
_ENTER = {"long": Action.ENTER_LONG, "short": Action.ENTER_SHORT}

_REQUIRED = (
    "trend_long",
    "trend_short",
    "baseline",
    "close",
    "high",
    "low",
    "atr",
    "volume_long",
    "volume_short",
)


# =============================================================================
# Signals
# =============================================================================
# Every comparison involving a missing value reports "no signal".


def _gt(a: Optional[float], b: Optional[float]) -> bool:
    return a is not None and b is not None and a > b


def _lt(a: Optional[float], b: Optional[float]) -> bool:
    return a is not None and b is not None and a < b


def _sign(a: Optional[float], b: Optional[float]) -> int:
    if a is None or b is None or a == b:
        return 0
    return 1 if a > b else -1


def trend_bias(snapshot: Snapshot) -> Optional[Side]:
    """Direction the trend pair points to, or None when equal or unknown."""
    direction = _sign(snapshot.trend_long, snapshot.trend_short)
    if direction > 0:
        return "long"
    if direction < 0:
        return "short"
    return None


def _beyond_baseline(side: Side, snapshot: Snapshot) -> bool:
    if side == "long":
        return _gt(snapshot.close, snapshot.baseline)
    return _lt(snapshot.close, snapshot.baseline)


def _volume_confirms(side: Side, snapshot: Snapshot) -> bool:
    if side == "long":
        return _gt(snapshot.volume_long, snapshot.volume_short)
    return _lt(snapshot.volume_long, snapshot.volume_short)


def _overshoot(side: Side, snapshot: Snapshot) -> bool:
    if snapshot.close is None or snapshot.baseline is None or snapshot.atr is None:
        return False
    reach = snapshot.atr * OVERSHOOT_ATR_MULT
    if side == "long":
        return snapshot.close >= snapshot.baseline + reach
    return snapshot.close <= snapshot.baseline - reach


def _extreme_reached(side: Side, snapshot: Snapshot, level: Optional[float]) -> bool:
    if level is None:
        return False
    if side == "long":
        return snapshot.high is not None and snapshot.high >= level
    return snapshot.low is not None and snapshot.low <= level


def _reversed(prior: Snapshot, current: Snapshot) -> bool:
    trend = _sign(prior.trend_long, prior.trend_short) * _sign(
        current.trend_long, current.trend_short
    )
    volume = _sign(prior.volume_long, prior.volume_short) * _sign(
        current.volume_long, current.volume_short
    )
    return trend < 0 or volume < 0


def _clean_close(side: Side, snapshot: Snapshot) -> bool:
    if snapshot.take_profit_2 is None or snapshot.stop_loss is None:
        return False
    if side == "long":
        return _extreme_reached(side, snapshot, snapshot.take_profit_2) and _gt(
            snapshot.low, snapshot.stop_loss
        )
    return _extreme_reached(side, snapshot, snapshot.take_profit_2) and _lt(
        snapshot.high, snapshot.stop_loss
    )


def _incomplete(snapshot: Snapshot) -> bool:
    return any(getattr(snapshot, name) is None for name in _REQUIRED)


# =============================================================================
# Rule sets
# =============================================================================


def _evaluate_entry(state: TradeState, current: Snapshot, prior: Snapshot) -> Decision:
    bias = trend_bias(current)
    if bias is None:
        return Decision(state, reason="no_trend_bias")
    if not _beyond_baseline(bias, current):
        return Decision(state, reason="baseline_rejected")
    if not _volume_confirms(bias, current):
        return Decision(state, reason="volume_rejected")
    if state.is_pending and state.side != bias:
        return Decision(TradeState.FLAT_FRESH, reason="opposite_pending_cleared")

    if _overshoot(bias, current):
        if state is TradeState.FLAT_FRESH:
            # Pullback rule: a single candle that crossed and overshot waits.
            prior_side = "short" if bias == "long" else "long"
            if _beyond_baseline(prior_side, prior):
                return Decision(_PENDING[bias], reason="overshoot_pending")
            return Decision(state, reason="overshoot")
        if state is _PENDING[bias]:
            return Decision(_CONFIRMED[bias], reason="overshoot_confirmed")
        return Decision(TradeState.FLAT_FRESH, reason="overshoot_reset")

    return Decision(_IN[bias], _ENTER[bias], reason="entry")


def _evaluate_continuation(current: Snapshot, prior: Snapshot) -> Decision:
    state = TradeState.CONTINUATION_PENDING
    bias = trend_bias(current)
    if bias is None:
        return Decision(state, reason="no_trend_bias")
    if not _beyond_baseline(bias, current):
        return Decision(TradeState.FLAT_FRESH, reason="continuation_lost_baseline")
    if not _volume_confirms(bias, current):
        return Decision(state, reason="volume_rejected")
    if _overshoot(bias, current):
        return _evaluate_entry(TradeState.FLAT_FRESH, current, prior)
    return Decision(_IN[bias], _ENTER[bias], reason="continuation_entry")


def _evaluate_lost_to_baseline(current: Snapshot, prior: Snapshot) -> Decision:
    if not _reversed(prior, current):
        return Decision(TradeState.LOST_TO_BASELINE, reason="awaiting_reversal")
    return _evaluate_entry(TradeState.FLAT_FRESH, current, prior)


def _reconcile_closed(state: TradeState, current: Snapshot, prior: Snapshot) -> Decision:
    side = state.side
    if side is None or not _clean_close(side, current):
        return Decision(TradeState.LOST_TO_BASELINE, reason="stopped_out")
    if _beyond_baseline(side, current):
        return _evaluate_continuation(current, prior)
    return _evaluate_entry(TradeState.FLAT_FRESH, current, prior)


def _manage_open(state: TradeState, current: Snapshot) -> Decision:
    side = state.side
    if side is None:
        raise UnexpectedStateError(f"{state.value} carries no side")
    against: Side = "short" if side == "long" else "long"
    trend_flipped = trend_bias(current) == against

    if _beyond_baseline(against, current):
        if state.tp1_hit or _extreme_reached(side, current, current.take_profit_1):
            return Decision(TradeState.FLAT_FRESH, Action.EXIT_POSITION, "baseline_cross_after_tp1")
        return Decision(TradeState.LOST_TO_BASELINE, Action.EXIT_POSITION, "baseline_cross")

    if state.tp1_hit:
        reverted = (
            _lt(current.close, current.entry_price)
            if side == "long"
            else _gt(current.close, current.entry_price)
        )
        if reverted:
            return Decision(TradeState.FLAT_FRESH, Action.EXIT_POSITION, "reverted_past_entry")
        if trend_flipped:
            return Decision(TradeState.FLAT_FRESH, Action.EXIT_POSITION, "trend_flip")
        return Decision(state, reason="hold")

    if _extreme_reached(side, current, current.take_profit_1):
        return Decision(_TP1_HIT[side], reason="take_profit_1_hit")
    if trend_flipped:
        return Decision(TradeState.FLAT_FRESH, Action.EXIT_POSITION, "trend_flip")
    return Decision(state, reason="hold")


# =============================================================================
# Entry point
# =============================================================================


def transition(
    state: TradeState,
    current: Snapshot,
    prior: Optional[Snapshot],
    position_size: float = 0.0,
) -> Decision:
    """
    Decide the next trade state and action for one closed candle.

    Args:
        state: Trade state stored before this candle
        current: Snapshot after merging this candle's updates
        prior: Snapshot before the merge (None reads as empty)
        position_size: Open size the exchange reports (0 when flat)

    Returns:
        Decision with the next state, the action and a reason

    Raises:
        UnexpectedStateError: If a flat-family state meets an open position
    """
    if prior is None:
        prior = Snapshot.empty(current.symbol)

    if position_size > 0:
        if state.is_flat:
            raise UnexpectedStateError(
                f"{current.symbol} is {state.value} but the exchange reports "
                f"an open position of {position_size}"
            )
        if _incomplete(current):
            return Decision(state, reason="incomplete_snapshot")
        return _manage_open(state, current)

    if _incomplete(current):
        return Decision(state, reason="incomplete_snapshot")
    if state.is_open:
        return _reconcile_closed(state, current, prior)
    if state is TradeState.CONTINUATION_PENDING:
        return _evaluate_continuation(current, prior)
    if state is TradeState.LOST_TO_BASELINE:
        return _evaluate_lost_to_baseline(current, prior)
    return _evaluate_entry(state, current, prior)
