"""
Immutables: the canonical escrow descriptor shared by both escrows of a swap.

Both escrow contracts derive their deterministic address from a hash of the
immutables, so the source and destination instances must agree on
order_hash, hashlock and the timelock offsets. Destination instances are
produced only by reproject(), which re-expresses asset fields in
destination-chain units and never recomputes order_hash.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from eth_abi import encode as abi_encode
from web3 import Web3

from ..core import to_hex
from ..errors import ValidationError, AddressDerivationMismatch
from .timelocks import TimelockSchedule, build_schedule

NATIVE_TOKEN = "0x" + "00" * 20


@dataclass(frozen=True)
class OrderParams:
    """Order fields hashed into order_hash."""
    salt: bytes
    maker: str
    receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int = 0


@dataclass(frozen=True)
class Immutables:
    """Escrow descriptor. Never mutated; use reproject() for the other side."""
    order_hash: bytes
    hashlock: bytes
    maker: str
    taker: str
    token: str
    amount: int
    safety_deposit: int
    timelocks: TimelockSchedule
    parameters: bytes = field(default=b"")

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot for the session log."""
        return {
            "order_hash": to_hex(self.order_hash),
            "hashlock": to_hex(self.hashlock),
            "maker": self.maker,
            "taker": self.taker,
            "token": self.token,
            "amount": str(self.amount),
            "safety_deposit": str(self.safety_deposit),
            "timelocks": {**self.timelocks.offsets(),
                          "deployed_at": self.timelocks.deployed_at},
            "parameters": self.parameters.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Immutables":
        timelocks = dict(data["timelocks"])
        deployed_at = timelocks.pop("deployed_at", 0)
        return cls(
            order_hash=bytes.fromhex(data["order_hash"][2:]),
            hashlock=bytes.fromhex(data["hashlock"][2:]),
            maker=data["maker"],
            taker=data["taker"],
            token=data["token"],
            amount=int(data["amount"]),
            safety_deposit=int(data["safety_deposit"]),
            timelocks=build_schedule(**timelocks).with_deployed_at(deployed_at),
            parameters=bytes.fromhex(data.get("parameters", "")),
        )

    def evm_tuple(self) -> Tuple:
        """
        ABI tuple (bytes32 orderHash, bytes32 hashlock, uint256 maker,
        uint256 taker, uint256 token, uint256 amount, uint256 safetyDeposit,
        uint256 timelocks). Addresses are carried in the low 160 bits.
        """
        return (
            self.order_hash,
            self.hashlock,
            address_to_uint(self.maker),
            address_to_uint(self.taker),
            address_to_uint(self.token),
            self.amount,
            self.safety_deposit,
            self.timelocks.pack(),
        )

    def cosmwasm_msg(self) -> Dict[str, Any]:
        """Immutables as the CosmWasm escrow contracts expect them."""
        tl = self.timelocks
        return {
            "order_hash": to_hex(self.order_hash),
            "hashlock": to_hex(self.hashlock),
            "maker": self.maker,
            "taker": self.taker,
            "token": self.token,
            "amount": str(self.amount),
            "safety_deposit": str(self.safety_deposit),
            "timelocks": {
                "deployed_at": tl.deployed_at,
                "src_withdrawal": tl.src_withdrawal,
                "src_public_withdrawal": tl.src_public_withdrawal,
                "src_cancellation": tl.src_cancellation,
                "src_public_cancellation": tl.src_public_cancellation,
                "dst_withdrawal": tl.dst_withdrawal,
                "dst_public_withdrawal": tl.dst_public_withdrawal,
                "dst_cancellation": tl.dst_cancellation,
            },
            "parameters": list(self.parameters),
        }


def address_to_uint(address: str) -> int:
    """EVM address (0x + 40 hex) to the uint256 Address encoding."""
    if not Web3.is_address(address):
        raise ValidationError(f"Not an EVM address: {address}")
    return int(address, 16)


def compute_order_hash(order: OrderParams) -> bytes:
    """keccak256 of the ABI-encoded order. Computed once per swap."""
    if len(order.salt) != 32:
        raise ValidationError("Order salt must be 32 bytes")
    encoded = abi_encode(
        ["bytes32", "uint256", "uint256", "uint256", "uint256",
         "uint256", "uint256", "uint256"],
        [
            order.salt,
            address_to_uint(order.maker),
            address_to_uint(order.receiver),
            address_to_uint(order.maker_asset),
            address_to_uint(order.taker_asset),
            order.making_amount,
            order.taking_amount,
            order.maker_traits,
        ],
    )
    return bytes(Web3.keccak(encoded))


def fee_parameters(protocol_fee_amount: int = 0, integrator_fee_amount: int = 0,
                   protocol_fee_recipient: str = "",
                   integrator_fee_recipient: str = "") -> bytes:
    """Opaque FeeInfo payload carried in Immutables.parameters."""
    return json.dumps({
        "protocol_fee_amount": str(protocol_fee_amount),
        "integrator_fee_amount": str(integrator_fee_amount),
        "protocol_fee_recipient": protocol_fee_recipient,
        "integrator_fee_recipient": integrator_fee_recipient,
    }, separators=(",", ":")).encode()


def _check_amounts(amount: int, safety_deposit: int):
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"Amount must be a positive integer, got {amount!r}")
    if not isinstance(safety_deposit, int) or isinstance(safety_deposit, bool) or safety_deposit < 0:
        raise ValidationError(f"Safety deposit must be a non-negative integer, got {safety_deposit!r}")


def build(order_hash: bytes, hashlock: bytes, maker: str, taker: str,
          token: str, amount: int, safety_deposit: int,
          schedule: TimelockSchedule, parameters: bytes = b"") -> Immutables:
    """
    Build source-side immutables.

    Raises:
        ValidationError: malformed hashes, empty identities, bad amounts
    """
    if not isinstance(order_hash, (bytes, bytearray)) or len(order_hash) != 32:
        raise ValidationError("order_hash must be 32 bytes")
    if not isinstance(hashlock, (bytes, bytearray)) or len(hashlock) != 32:
        raise ValidationError("hashlock must be 32 bytes")
    if not maker or not taker:
        raise ValidationError("maker and taker identities are required")
    if not token:
        raise ValidationError("token is required")
    if not isinstance(schedule, TimelockSchedule):
        raise ValidationError("schedule must be a TimelockSchedule (use build_schedule)")
    _check_amounts(amount, safety_deposit)

    return Immutables(
        order_hash=bytes(order_hash),
        hashlock=bytes(hashlock),
        maker=maker,
        taker=taker,
        token=token,
        amount=amount,
        safety_deposit=safety_deposit,
        timelocks=schedule,
        parameters=bytes(parameters),
    )


def reproject(immutables: Immutables, new_token: str, new_amount: int,
              new_safety_deposit: Optional[int] = None,
              parameters: Optional[bytes] = None,
              maker: Optional[str] = None,
              taker: Optional[str] = None) -> Immutables:
    """
    Re-express immutables for the other chain.

    Only asset fields (token, amount, safety deposit, fee parameters) and,
    when given, the chain-specific encoding of maker/taker change.
    order_hash, hashlock and timelocks are carried over unchanged.
    """
    if not new_token:
        raise ValidationError("token is required")
    safety_deposit = immutables.safety_deposit if new_safety_deposit is None else new_safety_deposit
    _check_amounts(new_amount, safety_deposit)

    return replace(
        immutables,
        token=new_token,
        amount=new_amount,
        safety_deposit=safety_deposit,
        parameters=immutables.parameters if parameters is None else bytes(parameters),
        maker=maker or immutables.maker,
        taker=taker or immutables.taker,
    )


def assert_linked(src: Immutables, dst: Immutables):
    """
    Both escrows must be bound to the same order, secret and schedule.

    Raises:
        AddressDerivationMismatch: the pair cannot resolve to linked escrows
    """
    if src.order_hash != dst.order_hash:
        raise AddressDerivationMismatch(
            f"order_hash differs: src={to_hex(src.order_hash)} dst={to_hex(dst.order_hash)}")
    if src.hashlock != dst.hashlock:
        raise AddressDerivationMismatch(
            f"hashlock differs: src={to_hex(src.hashlock)} dst={to_hex(dst.hashlock)}")
    if src.timelocks.offsets() != dst.timelocks.offsets():
        raise AddressDerivationMismatch("timelock offsets differ between src and dst immutables")
