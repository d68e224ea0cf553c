"""
Exchange gateway for candlesync.

The execution coordinator talks to the exchange only through the
``ExchangeGateway`` protocol. Two implementations are provided:

- ``BybitClient``: Bybit v2 private REST endpoints over httpx, every request
  signed by ``SignedRequestBuilder``
- ``PaperExchange``: in-memory balance, positions and resting take-profits
  for paper trading

Example Usage:
    ```python
    from candlesync.trading.exchange import create_exchange
    from candlesync.config import get_settings

    settings = get_settings()
    credentials = await provider.get_credentials(settings.exchange.secret_id)

    async with create_exchange(settings, credentials) as exchange:
        position = await exchange.get_position("BTCUSD")
        ack = await exchange.place_market_order("BTCUSD", "Buy", 12, stop_loss=100.5)
    ```
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, Protocol
import uuid

import httpx
import orjson

from candlesync.config.settings import ExchangeSettings, Settings
from candlesync.trading.errors import ExchangeError, OrderRejectedError
from candlesync.trading.secrets import Credentials
from candlesync.trading.signing import SignedRequestBuilder
from candlesync.utils import get_logger

logger = get_logger(__name__)

OrderSide = Literal["Buy", "Sell"]


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class OrderAck:
    """
    Exchange acknowledgement of an accepted order.

    Attributes:
        order_id: Exchange order identifier
        symbol: Instrument symbol
        side: Order side (Buy/Sell)
        order_type: Market or Limit
        qty: Order quantity in contracts
        price: Limit price (take-profits only)
        stop_loss: Stop-loss attached to the order (entries only)
        reduce_only: Whether the order can only reduce a position
        timestamp: Acknowledgement time
    """

    order_id: str
    symbol: str
    side: OrderSide
    order_type: Literal["Market", "Limit"]
    qty: float
    price: float | None = None
    stop_loss: float | None = None
    reduce_only: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert acknowledgement to dictionary representation."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class PositionInfo:
    """
    Open position as reported by the exchange.

    Attributes:
        symbol: Instrument symbol
        side: Buy for long, Sell for short, None when flat
        size: Open size in contracts (0 when flat)
        entry_price: Average entry price, if open
    """

    symbol: str
    side: Optional[OrderSide] = None
    size: float = 0.0
    entry_price: float | None = None

    @property
    def is_open(self) -> bool:
        return self.size > 0

    @classmethod
    def flat(cls, symbol: str) -> "PositionInfo":
        return cls(symbol=symbol)


def opposite(side: OrderSide) -> OrderSide:
    return "Sell" if side == "Buy" else "Buy"


class ExchangeGateway(Protocol):
    """Operations the execution coordinator needs from an exchange."""

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        qty: float,
        stop_loss: float | None = None,
        reduce_only: bool = False,
    ) -> OrderAck:
        """Submit a market order, optionally with an attached stop-loss.

        Raises:
            OrderRejectedError: If the exchange refuses the order
        """
        ...

    async def place_take_profit(
        self, symbol: str, side: OrderSide, price: float, qty: float
    ) -> OrderAck:
        """Rest a reduce-only limit order at ``price``.

        Raises:
            OrderRejectedError: If the exchange refuses the order
        """
        ...

    async def get_position(self, symbol: str) -> PositionInfo:
        """Raises ExchangeError if the query fails."""
        ...

    async def get_balance(self, asset: str) -> float:
        """Wallet balance of ``asset``. Raises ExchangeError if the query fails."""
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# Bybit REST Client
# =============================================================================


class BybitClient:
    """
    Bybit v2 private REST client.

    Order placement is a signed JSON POST; queries are signed GETs with the
    signature in the query string. Every response is ``{"ret_code": 0,
    "result": ...}`` on success.

    No request is retried: a failed order surfaces immediately so the
    coordinator can roll back.
    """

    ORDER_CREATE = "/v2/private/order/create"
    POSITION_LIST = "/v2/private/position/list"
    WALLET_BALANCE = "/v2/private/wallet/balance"

    def __init__(
        self,
        signer: SignedRequestBuilder,
        base_url: str = "https://api-testnet.bybit.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Bybit client.

        Args:
            signer: Request signer holding the API key pair
            base_url: REST base URL (testnet by default)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls, settings: ExchangeSettings, credentials: Credentials
    ) -> "BybitClient":
        signer = SignedRequestBuilder(
            api_key=credentials.key,
            api_secret=credentials.secret,
            recv_skew_ms=settings.recv_skew_ms,
        )
        return cls(signer, base_url=settings.base_url, timeout=settings.timeout_seconds)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client.

        Returns:
            Configured httpx AsyncClient
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client and cleanup resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BybitClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Transport helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Non-JSON response (HTTP {response.status_code})") from e
        if not isinstance(payload, dict):
            raise ValueError("Unexpected response shape")
        return payload

    async def _post_order(self, params: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        body = self.signer.build(params)
        try:
            response = await client.post(
                self.ORDER_CREATE,
                content=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            payload = self._decode(response)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("order_request_failed", params=params, error=str(e))
            raise OrderRejectedError(None, str(e)) from e

        ret_code = payload.get("ret_code")
        if ret_code != 0:
            message = str(payload.get("ret_msg", "unknown error"))
            logger.error(
                "order_rejected",
                params=params,
                ret_code=ret_code,
                ret_msg=message,
            )
            raise OrderRejectedError(None, message, ret_code)
        return payload.get("result") or {}

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        client = await self._get_client()
        url = f"{path}?{self.signer.query_string(params)}"
        try:
            response = await client.get(url)
            response.raise_for_status()
            payload = self._decode(response)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("exchange_query_failed", path=path, error=str(e))
            raise ExchangeError(f"{path} failed: {e}") from e

        ret_code = payload.get("ret_code")
        if ret_code != 0:
            message = payload.get("ret_msg", "unknown error")
            logger.error("exchange_query_rejected", path=path, ret_code=ret_code, ret_msg=message)
            raise ExchangeError(f"{path} returned {ret_code}: {message}")
        return payload.get("result")

    # -------------------------------------------------------------------------
    # Gateway operations
    # -------------------------------------------------------------------------

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        qty: float,
        stop_loss: float | None = None,
        reduce_only: bool = False,
    ) -> OrderAck:
        params = {
            "symbol": symbol,
            "side": side,
            "order_type": "Market",
            "qty": qty,
            "time_in_force": "GoodTillCancel",
            "stop_loss": stop_loss,
            "reduce_only": reduce_only,
        }
        result = await self._post_order(params)
        ack = OrderAck(
            order_id=str(result.get("order_id", "")),
            symbol=symbol,
            side=side,
            order_type="Market",
            qty=qty,
            stop_loss=stop_loss,
            reduce_only=reduce_only,
        )
        logger.info(
            "market_order_accepted",
            order_id=ack.order_id,
            symbol=symbol,
            side=side,
            qty=qty,
            stop_loss=stop_loss,
            reduce_only=reduce_only,
        )
        return ack

    async def place_take_profit(
        self, symbol: str, side: OrderSide, price: float, qty: float
    ) -> OrderAck:
        params = {
            "symbol": symbol,
            "side": side,
            "order_type": "Limit",
            "price": price,
            "qty": qty,
            "time_in_force": "GoodTillCancel",
            "reduce_only": True,
        }
        result = await self._post_order(params)
        ack = OrderAck(
            order_id=str(result.get("order_id", "")),
            symbol=symbol,
            side=side,
            order_type="Limit",
            qty=qty,
            price=price,
            reduce_only=True,
        )
        logger.info(
            "take_profit_accepted",
            order_id=ack.order_id,
            symbol=symbol,
            side=side,
            price=price,
            qty=qty,
        )
        return ack

    async def get_position(self, symbol: str) -> PositionInfo:
        result = await self._get(self.POSITION_LIST, {"symbol": symbol})
        # Inverse contracts answer with one object, linear ones with a list
        # holding one entry per side.
        entries = result if isinstance(result, list) else [result or {}]
        for entry in entries:
            if isinstance(entry, dict) and "data" in entry:
                entry = entry["data"]
            size = float(entry.get("size") or 0)
            if size > 0:
                side = entry.get("side")
                return PositionInfo(
                    symbol=symbol,
                    side=side if side in ("Buy", "Sell") else None,
                    size=size,
                    entry_price=float(entry["entry_price"]) if entry.get("entry_price") else None,
                )
        return PositionInfo.flat(symbol)

    async def get_balance(self, asset: str) -> float:
        result = await self._get(self.WALLET_BALANCE, {"coin": asset})
        try:
            return float(result[asset]["wallet_balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise ExchangeError(f"No wallet balance for {asset}") from e


# =============================================================================
# Paper Exchange
# =============================================================================


class PaperExchange:
    """
    Simulated exchange for paper trading.

    Keeps one position per symbol, the stop-loss attached to its entry and
    the resting take-profits. ``mark_candle`` replays a closed candle against
    the stop and the take-profits so positions close the way they would live.
    ``account_state`` and ``restore_account`` move one symbol's account in and
    out of the snapshot store between cycles.

    Example:
        ```python
        exchange = PaperExchange(initial_balance=1000.0)
        exchange.mark_candle("BTCUSD", high=106.0, low=104.0, close=105.0)

        await exchange.place_market_order("BTCUSD", "Buy", 12, stop_loss=100.5)
        position = await exchange.get_position("BTCUSD")
        ```
    """

    def __init__(self, initial_balance: float = 1000.0) -> None:
        """
        Initialize paper exchange.

        Args:
            initial_balance: Wallet balance reported for every base asset
        """
        self.initial_balance = initial_balance
        self.balances: dict[str, float] = {}
        self.positions: dict[str, PositionInfo] = {}
        self.stop_losses: dict[str, float] = {}
        self.resting: dict[str, list[OrderAck]] = {}
        self.order_history: list[OrderAck] = []
        self.mark_prices: dict[str, float] = {}

        logger.info("paper_exchange_initialized", initial_balance=initial_balance)

    async def __aenter__(self) -> "PaperExchange":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Nothing to release; present for gateway symmetry."""

    def _ack(self, **kwargs: Any) -> OrderAck:
        ack = OrderAck(order_id=str(uuid.uuid4()), **kwargs)
        self.order_history.append(ack)
        return ack

    def _reduce(self, symbol: str, qty: float) -> None:
        position = self.positions.get(symbol)
        if position is None:
            return
        position.size = max(position.size - qty, 0.0)
        if position.size == 0:
            self.positions.pop(symbol)
            self.stop_losses.pop(symbol, None)
            self.resting.pop(symbol, None)
            logger.info("paper_position_closed", symbol=symbol)

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        qty: float,
        stop_loss: float | None = None,
        reduce_only: bool = False,
    ) -> OrderAck:
        if qty <= 0:
            raise OrderRejectedError(None, f"Invalid qty: {qty}")

        position = self.positions.get(symbol)
        if reduce_only:
            if position is None or position.side == side:
                raise OrderRejectedError(None, "Reduce-only order would open a position")
            self._reduce(symbol, min(qty, position.size))
        else:
            if position is not None and position.side != side:
                raise OrderRejectedError(None, "Opposite position is open")
            price = self.mark_prices.get(symbol)
            if position is None:
                self.positions[symbol] = PositionInfo(
                    symbol=symbol, side=side, size=float(qty), entry_price=price
                )
            else:
                position.size += qty
            if stop_loss is not None:
                self.stop_losses[symbol] = stop_loss

        ack = self._ack(
            symbol=symbol,
            side=side,
            order_type="Market",
            qty=qty,
            stop_loss=stop_loss,
            reduce_only=reduce_only,
        )
        logger.info(
            "paper_market_order_filled",
            symbol=symbol,
            side=side,
            qty=qty,
            reduce_only=reduce_only,
        )
        return ack

    async def place_take_profit(
        self, symbol: str, side: OrderSide, price: float, qty: float
    ) -> OrderAck:
        position = self.positions.get(symbol)
        if position is None or position.side == side:
            raise OrderRejectedError(None, "No position for take-profit")
        ack = self._ack(
            symbol=symbol,
            side=side,
            order_type="Limit",
            qty=qty,
            price=price,
            reduce_only=True,
        )
        self.resting.setdefault(symbol, []).append(ack)
        logger.info("paper_take_profit_rested", symbol=symbol, price=price, qty=qty)
        return ack

    async def get_position(self, symbol: str) -> PositionInfo:
        position = self.positions.get(symbol)
        if position is None:
            return PositionInfo.flat(symbol)
        return PositionInfo(
            symbol=symbol,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
        )

    async def get_balance(self, asset: str) -> float:
        return self.balances.get(asset, self.initial_balance)

    def account_state(self, symbol: str) -> dict[str, Any]:
        """
        JSON-ready state of one symbol's account.

        Holds everything ``restore_account`` needs to carry the position, its
        stop and the resting take-profits into another process.
        """
        position = self.positions.get(symbol)
        return {
            "position": None if position is None else asdict(position),
            "stop_loss": self.stop_losses.get(symbol),
            "resting": [order.to_dict() for order in self.resting.get(symbol, [])],
            "mark_price": self.mark_prices.get(symbol),
        }

    def restore_account(self, symbol: str, state: Mapping[str, Any]) -> None:
        """Replace one symbol's account with a state from ``account_state``."""
        self.positions.pop(symbol, None)
        self.stop_losses.pop(symbol, None)
        self.resting.pop(symbol, None)
        self.mark_prices.pop(symbol, None)

        if state.get("position"):
            self.positions[symbol] = PositionInfo(**state["position"])
        if state.get("stop_loss") is not None:
            self.stop_losses[symbol] = state["stop_loss"]
        if state.get("resting"):
            self.resting[symbol] = [
                OrderAck(**{**order, "timestamp": datetime.fromisoformat(order["timestamp"])})
                for order in state["resting"]
            ]
        if state.get("mark_price") is not None:
            self.mark_prices[symbol] = state["mark_price"]

        logger.debug(
            "paper_account_restored",
            symbol=symbol,
            position_size=self.positions[symbol].size if symbol in self.positions else 0.0,
        )

    def mark_candle(self, symbol: str, high: float, low: float, close: float) -> None:
        """
        Replay a closed candle against the open position.

        The stop is checked before the take-profits.

        Args:
            symbol: Instrument symbol
            high: Candle high
            low: Candle low
            close: Candle close (becomes the fill price of market orders)
        """
        self.mark_prices[symbol] = close
        position = self.positions.get(symbol)
        if position is None:
            return

        is_long = position.side == "Buy"
        stop = self.stop_losses.get(symbol)
        if stop is not None and (low <= stop if is_long else high >= stop):
            logger.info("paper_stop_loss_hit", symbol=symbol, stop_loss=stop)
            self._reduce(symbol, position.size)
            return

        for order in list(self.resting.get(symbol, [])):
            touched = high >= order.price if is_long else low <= order.price
            if touched:
                self.resting[symbol].remove(order)
                logger.info("paper_take_profit_filled", symbol=symbol, price=order.price)
                self._reduce(symbol, order.qty)
                if symbol not in self.positions:
                    return


def create_exchange(
    settings: Settings,
    credentials: Credentials,
    paper_exchange: PaperExchange | None = None,
) -> ExchangeGateway:
    """
    Factory function to create the gateway for the configured trading mode.

    Args:
        settings: Application settings
        credentials: API key pair for the live client
        paper_exchange: Existing paper exchange to reuse in paper mode

    Returns:
        PaperExchange in paper mode, BybitClient otherwise
    """
    if settings.trading.paper_trading:
        if paper_exchange is not None:
            return paper_exchange
        return PaperExchange(initial_balance=settings.trading.initial_balance)
    return BybitClient.from_settings(settings.exchange, credentials)
