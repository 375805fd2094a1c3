"""
escrowswap - Cross-Chain Escrow Swap Coordinator

Atomic swaps between an EVM chain and a CosmWasm chain using a pair of
hash time-locked escrows bound to one secret.

Usage:
    from escrowswap import EscrowCoordinator, EVMEscrowAdapter, CosmosEscrowAdapter
    from escrowswap import build_schedule, Funding

    coordinator = EscrowCoordinator(EVMEscrowAdapter(evm_cfg),
                                    CosmosEscrowAdapter(cosmos_cfg))

    session = coordinator.open_session(order_hash, maker, taker,
                                       src_token, src_amount, src_deposit,
                                       dst_token, dst_amount, dst_deposit,
                                       schedule=build_schedule(**DEFAULT_OFFSETS))
    coordinator.run(session, Funding(src_amount, src_deposit, fill=fill),
                    Funding(dst_amount, dst_deposit))
"""

from .core import (
    SwapState,
    EscrowStatus,
    Side,
    AddressConfidence,
    generate_secret,
    commit,
    verify_secret,
    DEFAULT_OFFSETS,
)
from .errors import (
    SwapError,
    ValidationError,
    TransientChainError,
    RejectedTransactionError,
    TimingViolationError,
    AddressDerivationMismatch,
    InvalidSecretError,
    InvalidStateError,
    SessionBusyError,
)
from .config import EVMConfig, CosmosConfig, CoordinatorConfig

from .escrow import (
    TimelockSchedule,
    TimelockStage,
    build_schedule,
    Immutables,
    OrderParams,
    compute_order_hash,
    fee_parameters,
)

from .chains import Funding, DeployResult, EVMEscrowAdapter, OrderFill, CosmosEscrowAdapter

from .swap import EscrowCoordinator, SwapSession, SessionStore, CancellationWatcher

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapState",
    "EscrowStatus",
    "Side",
    "AddressConfidence",
    # Secrets
    "generate_secret",
    "commit",
    "verify_secret",
    "DEFAULT_OFFSETS",
    # Errors
    "SwapError",
    "ValidationError",
    "TransientChainError",
    "RejectedTransactionError",
    "TimingViolationError",
    "AddressDerivationMismatch",
    "InvalidSecretError",
    "InvalidStateError",
    "SessionBusyError",
    # Config
    "EVMConfig",
    "CosmosConfig",
    "CoordinatorConfig",
    # Escrow
    "TimelockSchedule",
    "TimelockStage",
    "build_schedule",
    "Immutables",
    "OrderParams",
    "compute_order_hash",
    "fee_parameters",
    # Adapters
    "Funding",
    "DeployResult",
    "EVMEscrowAdapter",
    "OrderFill",
    "CosmosEscrowAdapter",
    # Swap
    "EscrowCoordinator",
    "SwapSession",
    "SessionStore",
    "CancellationWatcher",
]
