"""
Exception hierarchy for the decision cycle.

Every failure a cycle can surface derives from ``CandlesyncError`` so callers
(the alert handler, the CLI) can catch one type and map it to an exit code.
Whether a failure left the snapshot untouched or committed a forced state is
documented per class; the coordinator is responsible for honouring it.
"""

from typing import Literal

OrderStage = Literal["entry", "take_profit_1", "take_profit_2", "exit", "flatten"]


class CandlesyncError(Exception):
    """Base class for all candlesync errors."""


class TransientStoreError(CandlesyncError):
    """The snapshot store could not be read or written. Nothing was mutated."""


class CredentialError(CandlesyncError):
    """Exchange credentials are missing, empty or unreadable."""


class ExchangeError(CandlesyncError):
    """A position or balance query against the exchange failed."""


class ZeroBalanceError(CandlesyncError):
    """The computed entry size is below the tradeable minimum.

    This is a size floor (``MIN_ORDER_QTY``), not a zero check: a qty of 1
    cannot be split across the two take-profits and fails the same way as 0.
    Raised after the symbol has been committed back to ``FLAT_FRESH``.
    """

    def __init__(self, symbol: str, qty: int, balance: float) -> None:
        super().__init__(
            f"Entry size {qty} for {symbol} is below the minimum (balance={balance})"
        )
        self.symbol = symbol
        self.qty = qty
        self.balance = balance


class OrderRejectedError(CandlesyncError):
    """The exchange rejected an order.

    Gateways raise it without a stage; the execution coordinator re-raises it
    tagged with the step of the order sequence that failed.

    Attributes:
        stage: Which step of the order sequence failed, once known
        reason: Rejection message from the exchange or transport
        ret_code: Exchange return code, when the exchange answered at all
    """

    def __init__(
        self, stage: OrderStage | None, message: str, ret_code: int | None = None
    ) -> None:
        super().__init__(f"{stage or 'order'} rejected: {message}")
        self.stage = stage
        self.reason = message
        self.ret_code = ret_code

    def at_stage(self, stage: OrderStage) -> "OrderRejectedError":
        """Copy of this error tagged with ``stage``."""
        return OrderRejectedError(stage, self.reason, self.ret_code)


class RollbackFailedError(OrderRejectedError):
    """A take-profit failed and the flattening close failed too.

    The position is still open on the exchange and has been recorded as open,
    so the next cycle manages it.
    """

    def __init__(self, message: str, ret_code: int | None = None) -> None:
        super().__init__("flatten", message, ret_code)


class UnexpectedStateError(CandlesyncError):
    """The stored trade state disagrees with the exchange in an impossible way."""
