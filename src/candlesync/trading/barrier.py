"""
Synchronization barrier for the four indicator feeds.

Each feed reports once per candle close, in any order and possibly more than
once. The barrier merges every update into the instrument's snapshot and lets
a decision cycle run only when all four feeds carry the same candle minute and
that minute has not been processed yet. A claim key taken when the barrier
opens stops two racing deliveries that both observe alignment from both
running the cycle.

Alignment compares the minute characters (``[14:16]``) of each feed's
timestamp as strings. Feeds that straddle a minute boundary for the same
candle never align.
"""

from dataclasses import dataclass
from typing import Optional

from candlesync.config.constants import DEFAULT_CLAIM_TTL_SECONDS, MINUTE_SLICE
from candlesync.data.snapshot import PartialUpdate, Snapshot
from candlesync.data.store import SnapshotStore
from candlesync.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BarrierResult:
    """
    Outcome of reconciling one partial update.

    Attributes:
        proceed: True if this caller owns the decision cycle for ``marker``
        snapshot: Snapshot after the merge
        prior: Snapshot before the merge
        marker: Candle minute all four feeds agree on, if they do
        reason: Why the barrier stayed closed (empty when open)
    """

    proceed: bool
    snapshot: Snapshot
    prior: Snapshot
    marker: Optional[str] = None
    reason: str = ""


def candle_minute(timestamp: Optional[str]) -> Optional[str]:
    """Minute component of an ISO-like ``YYYY-MM-DDTHH:MM:SS`` timestamp."""
    if not timestamp or len(timestamp) < MINUTE_SLICE.stop:
        return None
    return timestamp[MINUTE_SLICE]


def aligned_minute(snapshot: Snapshot) -> Optional[str]:
    """The minute shared by all four feeds, or None if any feed lags or is missing."""
    minutes = {candle_minute(ts) for ts in snapshot.timestamps().values()}
    if None in minutes or len(minutes) != 1:
        return None
    return minutes.pop()


class SynchronizationBarrier:
    """
    Gate that turns at-least-once feed deliveries into one decision per candle.

    Attributes:
        store: Snapshot store holding the merged feeds and the cycle claim
        claim_ttl: Lifetime of a cycle claim in seconds
    """

    def __init__(
        self, store: SnapshotStore, claim_ttl: int = DEFAULT_CLAIM_TTL_SECONDS
    ) -> None:
        self.store = store
        self.claim_ttl = claim_ttl

    async def reconcile(self, update: PartialUpdate) -> BarrierResult:
        """
        Merge ``update`` and decide whether a decision cycle should run.

        Args:
            update: Feed fields delivered by one alert

        Returns:
            BarrierResult; ``proceed`` is True for exactly one caller per
            aligned candle minute

        Raises:
            TransientStoreError: If the store cannot be read or written
        """
        symbol = update.symbol
        prior = await self.store.get(symbol)
        snapshot = await self.store.merge(update)

        minute = aligned_minute(snapshot)
        if minute is None:
            logger.debug(
                "barrier_waiting",
                symbol=symbol,
                minutes={
                    feed.value: candle_minute(ts)
                    for feed, ts in snapshot.timestamps().items()
                },
            )
            return BarrierResult(False, snapshot, prior, None, "feeds_not_aligned")

        if minute == snapshot.last_processed_marker:
            logger.debug("barrier_already_processed", symbol=symbol, minute=minute)
            return BarrierResult(False, snapshot, prior, minute, "already_processed")

        if not await self.store.claim(symbol, minute, self.claim_ttl):
            logger.info("barrier_claim_lost", symbol=symbol, minute=minute)
            return BarrierResult(False, snapshot, prior, minute, "claimed_elsewhere")

        logger.info("barrier_open", symbol=symbol, minute=minute)
        return BarrierResult(True, snapshot, prior, minute)

    async def release(self, symbol: str, minute: str) -> None:
        """Give up the cycle claim so a redelivery can retry the candle."""
        await self.store.release(symbol, minute)
        logger.info("barrier_released", symbol=symbol, minute=minute)
