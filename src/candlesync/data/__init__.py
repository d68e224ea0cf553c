"""
Data layer for candlesync.

Provides the snapshot model and the Redis-backed snapshot store.
"""

from .snapshot import (
    BOOKKEEPING_FIELDS,
    FEED_FIELDS,
    FEED_TIMESTAMPS,
    Feed,
    PartialUpdate,
    Snapshot,
    SnapshotField,
    TradeFacts,
    TradeState,
)
from .store import SnapshotStore

__all__ = [
    # Snapshot model
    "Feed",
    "SnapshotField",
    "FEED_FIELDS",
    "FEED_TIMESTAMPS",
    "BOOKKEEPING_FIELDS",
    "TradeState",
    "TradeFacts",
    "Snapshot",
    "PartialUpdate",
    # Store
    "SnapshotStore",
]
