"""
Trading module for candlesync.

Provides the trade lifecycle state machine, the error hierarchy, request
signing, credential retrieval and the exchange gateways. The store-backed
components (barrier, execution coordinator, decision cycle) are imported from
their own modules:

    from candlesync.trading.barrier import SynchronizationBarrier
    from candlesync.trading.executor import ExecutionCoordinator
    from candlesync.trading.cycle import DecisionCycle, create_decision_cycle
"""

from .errors import (
    CandlesyncError,
    CredentialError,
    ExchangeError,
    OrderRejectedError,
    RollbackFailedError,
    TransientStoreError,
    UnexpectedStateError,
    ZeroBalanceError,
)
from .exchange import (
    BybitClient,
    ExchangeGateway,
    OrderAck,
    PaperExchange,
    PositionInfo,
    create_exchange,
)
from .secrets import (
    Credentials,
    EnvSecretProvider,
    JsonFileSecretProvider,
    SecretProvider,
    StaticSecretProvider,
    create_secret_provider,
)
from .signing import SignedRequestBuilder
from .state_machine import Action, Decision, transition, trend_bias

__all__ = [
    # Errors
    "CandlesyncError",
    "TransientStoreError",
    "CredentialError",
    "ExchangeError",
    "ZeroBalanceError",
    "OrderRejectedError",
    "RollbackFailedError",
    "UnexpectedStateError",
    # State Machine
    "Action",
    "Decision",
    "transition",
    "trend_bias",
    # Exchange
    "ExchangeGateway",
    "BybitClient",
    "PaperExchange",
    "OrderAck",
    "PositionInfo",
    "create_exchange",
    "SignedRequestBuilder",
    # Credentials
    "Credentials",
    "SecretProvider",
    "EnvSecretProvider",
    "StaticSecretProvider",
    "JsonFileSecretProvider",
    "create_secret_provider",
]
