"""
Chain adapter interface used by the escrow lifecycle coordinator.

Adapters own wire formats, signing and confirmation depth. They report
failures only as TransientChainError (retry is safe),
PendingTransactionError (broadcast, unconfirmed) or RejectedTransactionError
(the chain executed and refused the payload).

Transaction methods take pending_tx: when set, the adapter does not
broadcast and only waits for that earlier transaction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from ..escrow.immutables import Immutables


@dataclass
class Funding:
    """Assets sent with a deploy call, in the deploying chain's units."""
    amount: int
    safety_deposit: int = 0
    denom: Optional[str] = None     # Cosmos denom; None on EVM (native value)
    fill: Any = None                # Adapter-specific order fill payload


@dataclass
class DeployResult:
    """Outcome of an escrow deployment."""
    tx_ref: str
    escrow_address: Optional[str] = None   # From receipt/events, None if not reported
    deployed_at: Optional[int] = None      # Block timestamp of the deploy tx


class ChainAdapter(ABC):
    """Operations both escrow sides share."""

    #: Short chain label used in session logs ("evm", "cosmos", ...)
    chain: str = ""

    @abstractmethod
    def withdraw(self, escrow_address: str, secret: bytes, immutables: Immutables,
                 pending_tx: Optional[str] = None) -> str:
        """Withdraw from escrow by revealing secret. Returns tx reference."""

    @abstractmethod
    def cancel(self, escrow_address: str, immutables: Immutables,
               pending_tx: Optional[str] = None) -> str:
        """Cancel escrow after its cancellation timelock. Returns tx reference."""

    @abstractmethod
    def chain_time(self) -> int:
        """Latest block timestamp (seconds)."""


class SourceChainAdapter(ChainAdapter):
    """Source side: maker funds are locked here first."""

    @abstractmethod
    def deploy(self, immutables: Immutables, funding: Funding,
               pending_tx: Optional[str] = None) -> DeployResult:
        """Deploy and fund the source escrow."""

    @abstractmethod
    def derive_address(self, immutables: Immutables) -> str:
        """Deterministic source escrow address for these immutables."""


class DestinationChainAdapter(ChainAdapter):
    """Destination side: taker funds + safety deposit are locked here."""

    @abstractmethod
    def deploy(self, immutables: Immutables, src_cancellation_timestamp: int,
               funding: Funding, pending_tx: Optional[str] = None) -> DeployResult:
        """
        Deploy and fund the destination escrow.

        The contract rejects the deploy if its own dst_cancellation would
        fall after src_cancellation_timestamp.
        """

    def derive_address(self, immutables: Immutables) -> Optional[str]:
        """Deterministic destination escrow address, None if not supported."""
        return None
