"""
Snapshot data model.

One ``Snapshot`` per instrument holds the latest value of every indicator feed
plus the bookkeeping of the trade currently being managed. Indicator feeds
arrive as ``PartialUpdate`` deltas; bookkeeping is only ever written by the
execution coordinator, together with the new trade state, as ``TradeFacts``.

The set of fields is closed: ``SnapshotField`` enumerates every key that can
appear in the stored hash.
"""

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Final, Literal, Mapping, Optional

Side = Literal["long", "short"]


# =============================================================================
# Field Set
# =============================================================================


class Feed(str, Enum):
    """Independent indicator feeds that report once per candle."""

    TREND = "trend"
    BASELINE = "baseline"
    VOLATILITY = "volatility"
    VOLUME = "volume"


class SnapshotField(str, Enum):
    """Every key of the per-instrument snapshot hash."""

    # TREND ("C1" comparison pair)
    TREND_LONG = "trend_long"
    TREND_SHORT = "trend_short"
    TREND_TIMESTAMP = "trend_timestamp"
    # BASELINE (also carries the candle)
    BASELINE = "baseline"
    CLOSE = "close"
    HIGH = "high"
    LOW = "low"
    BASELINE_TIMESTAMP = "baseline_timestamp"
    # VOLATILITY
    ATR = "atr"
    ATR_TIMESTAMP = "atr_timestamp"
    # VOLUME confirmation pair
    VOLUME_LONG = "volume_long"
    VOLUME_SHORT = "volume_short"
    VOLUME_TIMESTAMP = "volume_timestamp"
    # Bookkeeping
    TRADE_STATE = "trade_state"
    ENTRY_PRICE = "entry_price"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT_1 = "take_profit_1"
    TAKE_PROFIT_2 = "take_profit_2"
    POSITION_SIZE = "position_size"
    LAST_PROCESSED_MARKER = "last_processed_marker"

    @property
    def is_bookkeeping(self) -> bool:
        return self in BOOKKEEPING_FIELDS


FEED_FIELDS: Final[dict[Feed, tuple[SnapshotField, ...]]] = {
    Feed.TREND: (
        SnapshotField.TREND_LONG,
        SnapshotField.TREND_SHORT,
        SnapshotField.TREND_TIMESTAMP,
    ),
    Feed.BASELINE: (
        SnapshotField.BASELINE,
        SnapshotField.CLOSE,
        SnapshotField.HIGH,
        SnapshotField.LOW,
        SnapshotField.BASELINE_TIMESTAMP,
    ),
    Feed.VOLATILITY: (SnapshotField.ATR, SnapshotField.ATR_TIMESTAMP),
    Feed.VOLUME: (
        SnapshotField.VOLUME_LONG,
        SnapshotField.VOLUME_SHORT,
        SnapshotField.VOLUME_TIMESTAMP,
    ),
}

FEED_TIMESTAMPS: Final[dict[Feed, SnapshotField]] = {
    Feed.TREND: SnapshotField.TREND_TIMESTAMP,
    Feed.BASELINE: SnapshotField.BASELINE_TIMESTAMP,
    Feed.VOLATILITY: SnapshotField.ATR_TIMESTAMP,
    Feed.VOLUME: SnapshotField.VOLUME_TIMESTAMP,
}

BOOKKEEPING_FIELDS: Final[frozenset[SnapshotField]] = frozenset(
    {
        SnapshotField.TRADE_STATE,
        SnapshotField.ENTRY_PRICE,
        SnapshotField.STOP_LOSS,
        SnapshotField.TAKE_PROFIT_1,
        SnapshotField.TAKE_PROFIT_2,
        SnapshotField.POSITION_SIZE,
        SnapshotField.LAST_PROCESSED_MARKER,
    }
)

TEXT_FIELDS: Final[frozenset[SnapshotField]] = frozenset(
    {*FEED_TIMESTAMPS.values(), SnapshotField.TRADE_STATE, SnapshotField.LAST_PROCESSED_MARKER}
)


# =============================================================================
# Trade State
# =============================================================================


class TradeState(str, Enum):
    """Lifecycle state of the trade managed for one instrument."""

    FLAT_FRESH = "FLAT_FRESH"
    PENDING_ATR_LONG = "PENDING_ATR_LONG"
    PENDING_ATR_LONG_CONFIRMED = "PENDING_ATR_LONG_CONFIRMED"
    PENDING_ATR_SHORT = "PENDING_ATR_SHORT"
    PENDING_ATR_SHORT_CONFIRMED = "PENDING_ATR_SHORT_CONFIRMED"
    IN_LONG = "IN_LONG"
    IN_SHORT = "IN_SHORT"
    IN_LONG_TP1_HIT = "IN_LONG_TP1_HIT"
    IN_SHORT_TP1_HIT = "IN_SHORT_TP1_HIT"
    CONTINUATION_PENDING = "CONTINUATION_PENDING"
    LOST_TO_BASELINE = "LOST_TO_BASELINE"

    @property
    def is_open(self) -> bool:
        """True for the states that carry a live position."""
        return self.value.startswith("IN_")

    @property
    def is_flat(self) -> bool:
        return not self.is_open

    @property
    def is_pending(self) -> bool:
        return self.value.startswith("PENDING_ATR_")

    @property
    def tp1_hit(self) -> bool:
        return self.value.endswith("_TP1_HIT")

    @property
    def side(self) -> Optional[Side]:
        """Trade direction encoded in the state name, if any."""
        if "_LONG" in self.value:
            return "long"
        if "_SHORT" in self.value:
            return "short"
        return None


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class TradeFacts:
    """
    Bookkeeping of an opened trade.

    Written in the same store update as the state that opened or adjusted the
    trade; never persisted field by field.

    Attributes:
        entry_price: Reference entry price (the candle close at entry)
        stop_loss: Stop-loss price attached to the entry order
        take_profit_1: Near take-profit price (1x ATR)
        take_profit_2: Far take-profit price (3x ATR)
        position_size: Open size in contracts
    """

    entry_price: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float
    position_size: float

    def to_hash(self) -> dict[str, str]:
        """Encode as snapshot hash fields."""
        return {name: _encode(value) for name, value in asdict(self).items()}


@dataclass(frozen=True)
class Snapshot:
    """
    Decoded per-instrument record.

    Any field the store has not seen yet is ``None``; a missing trade state
    reads as ``FLAT_FRESH``.
    """

    symbol: str
    trend_long: float | None = None
    trend_short: float | None = None
    trend_timestamp: str | None = None
    baseline: float | None = None
    close: float | None = None
    high: float | None = None
    low: float | None = None
    baseline_timestamp: str | None = None
    atr: float | None = None
    atr_timestamp: str | None = None
    volume_long: float | None = None
    volume_short: float | None = None
    volume_timestamp: str | None = None
    trade_state: TradeState = TradeState.FLAT_FRESH
    entry_price: float | None = None
    stop_loss: float | None = None
    take_profit_1: float | None = None
    take_profit_2: float | None = None
    position_size: float | None = None
    last_processed_marker: str | None = None

    @classmethod
    def empty(cls, symbol: str) -> "Snapshot":
        return cls(symbol=symbol)

    @classmethod
    def from_hash(cls, symbol: str, raw: Mapping[str, Any]) -> "Snapshot":
        """
        Decode a stored hash.

        Unknown keys are ignored and empty strings read as missing.

        Args:
            symbol: Instrument the hash belongs to
            raw: Field/value mapping as returned by the store

        Returns:
            Decoded Snapshot

        Raises:
            ValueError: If a numeric field or the trade state cannot be decoded
        """
        values: dict[str, Any] = {}
        for key, value in raw.items():
            if isinstance(value, bytes):
                value = value.decode()
            if isinstance(key, bytes):
                key = key.decode()
            try:
                snapshot_field = SnapshotField(key)
            except ValueError:
                continue
            if value is None or value == "":
                continue
            if snapshot_field is SnapshotField.TRADE_STATE:
                values[key] = TradeState(value)
            elif snapshot_field in TEXT_FIELDS:
                values[key] = str(value)
            else:
                values[key] = float(value)
        return cls(symbol=symbol, **values)

    def timestamps(self) -> dict[Feed, str | None]:
        """Latest timestamp reported by each feed."""
        return {feed: getattr(self, ts.value) for feed, ts in FEED_TIMESTAMPS.items()}

    def facts(self) -> TradeFacts | None:
        """Recorded trade bookkeeping, or None if any part of it is missing."""
        values = {f.name: getattr(self, f.name) for f in fields(TradeFacts)}
        if any(value is None for value in values.values()):
            return None
        return TradeFacts(**values)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trade_state"] = self.trade_state.value
        return data


@dataclass(frozen=True)
class PartialUpdate:
    """
    Typed delta carrying some feed fields of one instrument.

    Only feed fields are accepted; bookkeeping belongs to the coordinator.

    Attributes:
        symbol: Instrument the update belongs to
        fields: Field -> value mapping (numbers, or strings for timestamps)

    Raises:
        ValueError: On an empty update, a missing symbol, a bookkeeping field,
            or a missing value
    """

    symbol: str
    fields: Mapping[SnapshotField, float | str]

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValueError("PartialUpdate requires a symbol")
        if not self.fields:
            raise ValueError(f"PartialUpdate for {self.symbol} carries no fields")

        normalized: dict[SnapshotField, float | str] = {}
        for key, value in self.fields.items():
            snapshot_field = SnapshotField(key)
            if snapshot_field.is_bookkeeping:
                raise ValueError(
                    f"{snapshot_field.value} is bookkeeping and cannot be set by an update"
                )
            if value is None:
                raise ValueError(f"{snapshot_field.value} has no value")
            normalized[snapshot_field] = value
        object.__setattr__(self, "fields", normalized)

    @property
    def feeds(self) -> set[Feed]:
        """Feeds touched by this update."""
        return {
            feed
            for feed, members in FEED_FIELDS.items()
            if any(member in self.fields for member in members)
        }

    def to_hash(self) -> dict[str, str]:
        """Encode as snapshot hash fields."""
        return {key.value: _encode(value) for key, value in self.fields.items()}


def _encode(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        raise TypeError("Boolean values are not part of the snapshot")
    return str(value)
