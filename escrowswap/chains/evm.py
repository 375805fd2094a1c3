"""
EVM source-chain adapter for escrowswap.

Talks to the escrow Resolver (deploySrc / withdraw / cancel) and the
EscrowFactory address views on an EVM chain (Ethereum Sepolia by default).
Immutables are passed as the packed 8-field tuple; identities and token are
uint256-encoded addresses, timelocks are the packed uint256.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..config import EVMConfig
from ..core import to_hex, short_hex
from ..errors import (
    TransientChainError, PendingTransactionError, RejectedTransactionError, ValidationError,
)
from ..escrow.immutables import Immutables, OrderParams, address_to_uint
from .base import SourceChainAdapter, Funding, DeployResult

log = logging.getLogger(__name__)

IMMUTABLES_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "maker", "type": "uint256"},
    {"name": "taker", "type": "uint256"},
    {"name": "token", "type": "uint256"},
    {"name": "amount", "type": "uint256"},
    {"name": "safetyDeposit", "type": "uint256"},
    {"name": "timelocks", "type": "uint256"},
]

IMMUTABLES_INPUT = {"name": "immutables", "type": "tuple", "components": IMMUTABLES_COMPONENTS}

# Resolver ABI (minimal - only functions we use)
RESOLVER_ABI = [
    {
        "name": "deploySrc",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            IMMUTABLES_INPUT,
            {"name": "order", "type": "uint256[8]"},
            {"name": "r", "type": "bytes32"},
            {"name": "vs", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "takerTraits", "type": "uint256"},
            {"name": "args", "type": "bytes"}
        ],
        "outputs": []
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "escrow", "type": "address"},
            {"name": "secret", "type": "bytes32"},
            IMMUTABLES_INPUT
        ],
        "outputs": []
    },
    {
        "name": "cancel",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "escrow", "type": "address"},
            IMMUTABLES_INPUT
        ],
        "outputs": []
    }
]

# EscrowFactory address views
ESCROW_FACTORY_ABI = [
    {
        "name": "addressOfEscrowSrc",
        "type": "function",
        "stateMutability": "view",
        "inputs": [IMMUTABLES_INPUT],
        "outputs": [{"name": "", "type": "address"}]
    }
]


@dataclass
class OrderFill:
    """Signed order data the Resolver needs to fill the maker's order."""
    order: List[int]            # uint256[8]: salt, maker, receiver, makerAsset, takerAsset,
                                # makingAmount, takingAmount, makerTraits
    r: bytes
    vs: bytes
    taker_traits: int = 0
    args: bytes = b""

    @classmethod
    def from_signature(cls, order: List[int], signature: bytes, **kwargs) -> "OrderFill":
        """Split a 65-byte signature into (r, vs) compact form."""
        if len(signature) < 64:
            raise ValidationError("Signature must be at least 64 bytes")
        return cls(order=order, r=signature[:32], vs=signature[32:64], **kwargs)


def order_words(order: OrderParams) -> List[int]:
    """Order as the uint256[8] array deploySrc takes."""
    return [
        int.from_bytes(order.salt, "big"),
        address_to_uint(order.maker),
        address_to_uint(order.receiver),
        address_to_uint(order.maker_asset),
        address_to_uint(order.taker_asset),
        order.making_amount,
        order.taking_amount,
        order.maker_traits,
    ]


def sign_order(order: OrderParams, order_hash: bytes, maker_private_key: str) -> OrderFill:
    """Maker signs the order hash (EIP-191 personal message)."""
    message = encode_defunct(primitive=bytes(order_hash))
    signed = Account.sign_message(message, private_key=maker_private_key)
    return OrderFill.from_signature(order_words(order), bytes(signed.signature))


class EVMEscrowAdapter(SourceChainAdapter):
    """
    Source escrow adapter for EVM chains.

    Signs with eth_account, sends through web3 HTTPProvider and waits for
    the receipt before returning.
    """

    chain = "evm"

    def __init__(self, config: EVMConfig):
        self.config = config
        self._web3 = None
        self._account = None

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": 30},
            ))
        return self._web3

    @property
    def account(self):
        """Lazy-load signer from config.private_key."""
        if self._account is None:
            private_key = self.config.private_key
            if not private_key:
                raise ValidationError("EVM private key not configured")
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
            self._account = Account.from_key(private_key)
        return self._account

    def _resolver(self):
        if not self.config.resolver:
            raise ValidationError("EVM resolver address not configured")
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.resolver),
            abi=RESOLVER_ABI
        )

    def _factory(self):
        if not self.config.escrow_factory:
            raise ValidationError("EVM escrow factory address not configured")
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.escrow_factory),
            abi=ESCROW_FACTORY_ABI
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    def _transact(self, call, label: str, value: int = 0,
                  pending_tx: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        """
        Sign, send and wait for a contract call.

        With pending_tx, nothing is sent; only that tx's receipt is awaited.

        Returns:
            (tx_hash_hex, receipt)

        Raises:
            PendingTransactionError: sent, but no receipt yet
        """
        w3 = self.web3
        tx_ref = pending_tx

        try:
            if tx_ref is None:
                account = self.account
                nonce = w3.eth.get_transaction_count(account.address, 'pending')
                gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)

                tx = call.build_transaction({
                    'from': account.address,
                    'nonce': nonce,
                    'gas': self.config.gas_limit,
                    'gasPrice': gas_price,
                    'chainId': self.config.chain_id,
                    'value': value,
                })

                signed = account.sign_transaction(tx)
                tx_ref = to_hex(bytes(w3.eth.send_raw_transaction(signed.raw_transaction)))
                log.info(f"{label} TX: {tx_ref}")
            else:
                log.info(f"{label}: waiting for pending TX {tx_ref}")

            receipt = w3.eth.wait_for_transaction_receipt(tx_ref, timeout=self.config.tx_timeout)

        except ContractLogicError as e:
            raise RejectedTransactionError(f"{label} reverted: {e}", tx_ref=tx_ref, chain=self.chain)
        except TimeExhausted as e:
            raise PendingTransactionError(f"{label} receipt timeout ({tx_ref}): {e}",
                                          tx_ref=tx_ref, chain=self.chain)
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            if tx_ref:
                raise PendingTransactionError(f"{label} RPC failure after send ({tx_ref}): {e}",
                                              tx_ref=tx_ref, chain=self.chain)
            raise TransientChainError(f"{label} RPC failure: {e}", chain=self.chain)
        except (Web3Exception, ValueError) as e:
            # Node refused the payload (insufficient funds, bad nonce, ...)
            raise RejectedTransactionError(f"{label} rejected: {e}", tx_ref=tx_ref, chain=self.chain)

        if receipt['status'] != 1:
            raise RejectedTransactionError(f"{label} failed (status=0)", tx_ref=tx_ref, chain=self.chain)

        return tx_ref, receipt

    def _block_timestamp(self, block_number) -> Optional[int]:
        try:
            return int(self.web3.eth.get_block(block_number)['timestamp'])
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            log.warning(f"Could not read block {block_number} timestamp: {e}")
            return None

    def deploy(self, immutables: Immutables, funding: Funding,
               pending_tx: Optional[str] = None) -> DeployResult:
        """
        Fill the maker's order through the Resolver, creating the source escrow.

        funding.fill must be an OrderFill. The tx value covers the fill amount
        plus safety deposit.
        """
        fill = funding.fill
        if not isinstance(fill, OrderFill):
            raise ValidationError("EVM deploySrc requires an OrderFill in funding.fill")

        log.info(f"Deploying src escrow: amount={funding.amount}, "
                 f"hashlock={short_hex(immutables.hashlock)}")

        call = self._resolver().functions.deploySrc(
            immutables.evm_tuple(),
            fill.order,
            fill.r,
            fill.vs,
            funding.amount,
            fill.taker_traits,
            fill.args,
        )
        tx_ref, receipt = self._transact(
            call, "deploySrc", value=funding.amount + funding.safety_deposit,
            pending_tx=pending_tx)

        # Factory does not emit the escrow address; coordinator derives it
        return DeployResult(
            tx_ref=tx_ref,
            escrow_address=None,
            deployed_at=self._block_timestamp(receipt['blockNumber']),
        )

    def withdraw(self, escrow_address: str, secret: bytes, immutables: Immutables,
                 pending_tx: Optional[str] = None) -> str:
        log.info(f"Withdrawing src escrow {escrow_address}")
        call = self._resolver().functions.withdraw(
            Web3.to_checksum_address(escrow_address),
            bytes(secret),
            immutables.evm_tuple(),
        )
        tx_ref, _ = self._transact(call, "withdraw", pending_tx=pending_tx)
        return tx_ref

    def cancel(self, escrow_address: str, immutables: Immutables,
               pending_tx: Optional[str] = None) -> str:
        log.info(f"Cancelling src escrow {escrow_address}")
        call = self._resolver().functions.cancel(
            Web3.to_checksum_address(escrow_address),
            immutables.evm_tuple(),
        )
        tx_ref, _ = self._transact(call, "cancel", pending_tx=pending_tx)
        return tx_ref

    # =========================================================================
    # Queries
    # =========================================================================

    def derive_address(self, immutables: Immutables) -> str:
        """EscrowFactory.addressOfEscrowSrc(immutables)."""
        try:
            address = self._factory().functions.addressOfEscrowSrc(immutables.evm_tuple()).call()
        except ContractLogicError as e:
            raise RejectedTransactionError(f"addressOfEscrowSrc reverted: {e}", chain=self.chain)
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise TransientChainError(f"addressOfEscrowSrc RPC failure: {e}", chain=self.chain)
        return Web3.to_checksum_address(address)

    def chain_time(self) -> int:
        try:
            return int(self.web3.eth.get_block('latest')['timestamp'])
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise TransientChainError(f"Latest block query failed: {e}", chain=self.chain)
