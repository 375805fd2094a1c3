"""
Chain adapters for escrowswap.

Each adapter provides the escrow operations the coordinator needs:
- Deploying and funding an escrow
- Withdrawing with the secret, cancelling after timeout
- Deriving escrow addresses and reading chain time
"""

from .base import ChainAdapter, SourceChainAdapter, DestinationChainAdapter, Funding, DeployResult
from .evm import EVMEscrowAdapter, OrderFill, order_words, sign_order
from .cosmos import CosmosEscrowAdapter

__all__ = [
    "ChainAdapter",
    "SourceChainAdapter",
    "DestinationChainAdapter",
    "Funding",
    "DeployResult",
    "EVMEscrowAdapter",
    "OrderFill",
    "order_words",
    "sign_order",
    "CosmosEscrowAdapter",
]
