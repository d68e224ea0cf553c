"""
Redis-backed snapshot store.

One Redis hash per instrument (``<prefix>:snapshot:<SYMBOL>``) holds every
``SnapshotField``. A short-lived claim key per candle minute
(``<prefix>:cycle:<SYMBOL>:<MINUTE>``) marks a decision cycle in progress. In
paper mode the simulated account of an instrument (position, stop and resting
take-profits) lives as JSON under ``<prefix>:paper:<SYMBOL>``.

Example Usage:
    ```python
    from candlesync.data.store import SnapshotStore
    from candlesync.config import get_settings

    settings = get_settings()

    async with SnapshotStore.from_settings(settings.redis) as store:
        prior = await store.get("BTCUSD")
        current = await store.merge(update)
        if await store.claim("BTCUSD", "15", ttl=600):
            ...
    ```
"""

from typing import Any, Optional

import orjson
from redis.asyncio import Redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from candlesync.config.settings import RedisSettings
from candlesync.data.snapshot import PartialUpdate, Snapshot, SnapshotField, TradeFacts, TradeState
from candlesync.trading.errors import TransientStoreError
from candlesync.utils import get_logger

logger = get_logger(__name__)


class SnapshotStore:
    """
    Async access to per-instrument snapshots.

    Every Redis failure surfaces as ``TransientStoreError``; a failed call
    never leaves a half-applied update behind because each write is a single
    HSET or a MULTI/EXEC transaction.

    Attributes:
        host: Redis server host
        port: Redis server port
        db: Redis database number
        key_prefix: Namespace prepended to every key
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        key_prefix: str = "candlesync",
        client: Optional[Redis] = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            host: Redis server host
            port: Redis server port
            password: Redis authentication password (optional)
            db: Redis database number (default: 0)
            key_prefix: Namespace prepended to every key
            client: Already-constructed client; skips ``connect``'s client creation
        """
        self.host = host
        self.port = port
        self.password = password
        self.db = db
        self.key_prefix = key_prefix
        self._client: Optional[Redis] = client

    @classmethod
    def from_settings(cls, settings: RedisSettings) -> "SnapshotStore":
        return cls(
            host=settings.host,
            port=settings.port,
            password=settings.password.get_secret_value() if settings.password else None,
            db=settings.db,
            key_prefix=settings.key_prefix,
        )

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Establish connection to Redis server.

        Raises:
            TransientStoreError: If the server cannot be reached
        """
        if self._client is None:
            self._client = Redis(
                host=self.host,
                port=self.port,
                password=self.password,
                db=self.db,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
        try:
            await self._client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "redis_connection_failed",
                host=self.host,
                port=self.port,
                error=str(e),
            )
            raise TransientStoreError(f"Cannot reach Redis at {self.host}:{self.port}") from e
        logger.info("redis_connected", host=self.host, port=self.port, db=self.db)

    async def disconnect(self) -> None:
        """Close Redis connection gracefully."""
        if self._client:
            await self._client.aclose()
            logger.info("redis_disconnected")
            self._client = None

    async def __aenter__(self) -> "SnapshotStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def snapshot_key(self, symbol: str) -> str:
        return self._key("snapshot", symbol)

    def claim_key(self, symbol: str, minute: str) -> str:
        return f"{self._key('cycle', symbol)}:{minute}"

    def paper_key(self, symbol: str) -> str:
        return self._key("paper", symbol)

    def _key(self, kind: str, symbol: str) -> str:
        if self.key_prefix:
            return f"{self.key_prefix}:{kind}:{symbol.upper()}"
        return f"{kind}:{symbol.upper()}"

    def _require_client(self) -> Redis:
        if self._client is None:
            raise TransientStoreError("Redis client not connected")
        return self._client

    # -------------------------------------------------------------------------
    # Snapshot operations
    # -------------------------------------------------------------------------

    async def get(self, symbol: str) -> Snapshot:
        """
        Read the current snapshot of an instrument.

        Args:
            symbol: Instrument symbol

        Returns:
            Decoded snapshot; an empty one if the instrument was never seen

        Raises:
            TransientStoreError: If the read fails
        """
        client = self._require_client()
        key = self.snapshot_key(symbol)
        try:
            raw = await client.hgetall(key)
        except RedisError as e:
            logger.error("snapshot_get_error", key=key, error=str(e))
            raise TransientStoreError(f"Failed to read {key}") from e

        if not raw:
            logger.debug("snapshot_missing", symbol=symbol)
            return Snapshot.empty(symbol)
        return Snapshot.from_hash(symbol, raw)

    async def merge(self, update: PartialUpdate) -> Snapshot:
        """
        Apply a partial update and read back the resulting snapshot.

        The write and the read-back run in one MULTI/EXEC transaction, so the
        returned snapshot is exactly the record this update produced.

        Args:
            update: Feed fields to write

        Returns:
            Snapshot as it stands after the update

        Raises:
            TransientStoreError: If the transaction fails
        """
        client = self._require_client()
        key = self.snapshot_key(update.symbol)
        try:
            pipe = client.pipeline(transaction=True)
            pipe.hset(key, mapping=update.to_hash())
            pipe.hgetall(key)
            _, raw = await pipe.execute()
        except RedisError as e:
            logger.error("snapshot_merge_error", key=key, error=str(e))
            raise TransientStoreError(f"Failed to merge update into {key}") from e

        logger.debug(
            "snapshot_merged",
            symbol=update.symbol,
            fields=sorted(f.value for f in update.fields),
        )
        return Snapshot.from_hash(update.symbol, raw)

    async def commit(
        self,
        symbol: str,
        state: TradeState,
        marker: str,
        facts: Optional[TradeFacts] = None,
        paper_account: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Persist the outcome of a decision cycle.

        State, marker, trade facts and the paper account are written in one
        MULTI/EXEC transaction, so a reader never sees a new state with stale
        facts, and a paper position is never recorded without its state.

        Args:
            symbol: Instrument symbol
            state: New trade state
            marker: Candle minute that has now been processed
            facts: Trade bookkeeping to record alongside the state
            paper_account: Simulated account to store with the state (paper mode)

        Raises:
            TransientStoreError: If the write fails
        """
        client = self._require_client()
        key = self.snapshot_key(symbol)
        mapping = {
            SnapshotField.TRADE_STATE.value: state.value,
            SnapshotField.LAST_PROCESSED_MARKER.value: marker,
        }
        if facts is not None:
            mapping.update(facts.to_hash())

        try:
            pipe = client.pipeline(transaction=True)
            pipe.hset(key, mapping=mapping)
            if paper_account is not None:
                pipe.set(self.paper_key(symbol), orjson.dumps(paper_account))
            await pipe.execute()
        except RedisError as e:
            logger.error("snapshot_commit_error", key=key, error=str(e))
            raise TransientStoreError(f"Failed to commit {key}") from e

        logger.info(
            "snapshot_committed",
            symbol=symbol,
            trade_state=state.value,
            marker=marker,
            with_facts=facts is not None,
        )

    # -------------------------------------------------------------------------
    # Cycle claim
    # -------------------------------------------------------------------------

    async def claim(self, symbol: str, minute: str, ttl: int) -> bool:
        """
        Claim the decision cycle of one candle minute.

        The claim key carries the minute, so a claim left behind by a crashed
        cycle only blocks redeliveries of its own candle until it expires.

        Args:
            symbol: Instrument symbol
            minute: Candle minute being processed
            ttl: Claim lifetime in seconds

        Returns:
            True if this caller now owns the cycle, False if another caller does

        Raises:
            TransientStoreError: If the write fails
        """
        client = self._require_client()
        key = self.claim_key(symbol, minute)
        try:
            acquired = await client.set(key, minute, nx=True, ex=ttl)
        except RedisError as e:
            logger.error("cycle_claim_error", key=key, error=str(e))
            raise TransientStoreError(f"Failed to claim {key}") from e
        return bool(acquired)

    async def release(self, symbol: str, minute: str) -> None:
        """
        Drop the cycle claim of one candle minute.

        Raises:
            TransientStoreError: If the delete fails
        """
        client = self._require_client()
        key = self.claim_key(symbol, minute)
        try:
            await client.delete(key)
        except RedisError as e:
            logger.error("cycle_release_error", key=key, error=str(e))
            raise TransientStoreError(f"Failed to release {key}") from e
        logger.debug("cycle_released", symbol=symbol, minute=minute)

    # -------------------------------------------------------------------------
    # Paper account
    # -------------------------------------------------------------------------

    async def get_paper_account(self, symbol: str) -> Optional[dict[str, Any]]:
        """
        Read the simulated account of an instrument.

        Returns:
            Account state as written by ``commit``, or None if none was stored

        Raises:
            TransientStoreError: If the read fails
        """
        client = self._require_client()
        key = self.paper_key(symbol)
        try:
            raw = await client.get(key)
        except RedisError as e:
            logger.error("paper_account_get_error", key=key, error=str(e))
            raise TransientStoreError(f"Failed to read {key}") from e

        if raw is None:
            return None
        return orjson.loads(raw)
