"""
Strategy and Execution Constants for candlesync.

This module defines the fixed multipliers, sizing rules, and exchange timing
parameters used by the trade state machine and the execution coordinator.
The values mirror the rule set the live system has always traded with and are
not meant to be tuned per deployment; anything operational lives in
``candlesync.config.settings`` instead.
"""

from typing import Final


# =============================================================================
# ATR Multipliers
# =============================================================================

STOP_LOSS_ATR_MULT: Final[float] = 1.5
"""
Stop-loss distance from entry, in multiples of the candle ATR value.
Attached to the market entry so the broker protects the position from the first fill.
"""

TAKE_PROFIT_1_ATR_MULT: Final[float] = 1.0
"""
First take-profit distance from entry (1x ATR).
Closes the first half of the position; touching it marks the trade as TP1_HIT.
"""

TAKE_PROFIT_2_ATR_MULT: Final[float] = 3.0
"""
Second ("wide") take-profit distance from entry (3x ATR).
Closes the remainder; reaching it without breaching the stop is a clean full close.
"""

OVERSHOOT_ATR_MULT: Final[float] = 1.0
"""
Distance beyond the baseline, in ATR, at which an entry is deferred for a pullback.
"""


# =============================================================================
# Position Sizing
# =============================================================================

QTY_FRACTION: Final[float] = 0.1
"""
Fraction of the available balance (converted to quote currency) put into a trade.
"""

MIN_ORDER_QTY: Final[int] = 2
"""
Smallest whole-unit entry size.
Both take-profit orders need at least one unit each.
"""


# =============================================================================
# Exchange Timing
# =============================================================================

RECV_SKEW_MS: Final[int] = 800
"""
Forward skew added to request timestamps (milliseconds).
The exchange rejects timestamps later than server_time + 1000 ms.
"""

DEFAULT_CLAIM_TTL_SECONDS: Final[int] = 600
"""
Lifetime of the per-symbol cycle claim taken when the barrier opens.
Long enough to outlive one decision cycle, short enough to expire before the next candle.
"""


# =============================================================================
# Barrier
# =============================================================================

MINUTE_SLICE: Final[slice] = slice(14, 16)
"""
Position of the minute component inside an ISO-like timestamp
(``YYYY-MM-DDTHH:MM:SS``). Compared as a string.
"""
