"""
Core types and utilities for escrowswap.
"""

import secrets
from enum import Enum
from typing import Union

from web3 import Web3

from .errors import ValidationError


SECRET_SIZE = 32


class SwapState(Enum):
    """Escrow lifecycle states for one swap."""
    CREATED = "created"                 # Secret + immutables built, nothing on-chain
    SRC_DEPLOYED = "src_deployed"       # Maker funds locked in source escrow
    DST_DEPLOYED = "dst_deployed"       # Taker funds + safety deposit locked in destination escrow
    DST_WITHDRAWN = "dst_withdrawn"     # Maker withdrew on destination, secret public
    SRC_WITHDRAWN = "src_withdrawn"     # Taker withdrew on source (success)
    SRC_CANCELLED = "src_cancelled"     # Source escrow refunded to maker
    DST_CANCELLED = "dst_cancelled"     # Destination escrow refunded to taker


TERMINAL_STATES = (SwapState.SRC_WITHDRAWN, SwapState.SRC_CANCELLED)


class EscrowStatus(Enum):
    """Per-side escrow status as tracked by the coordinator."""
    UNDEPLOYED = "undeployed"
    DEPLOYED = "deployed"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class Side(Enum):
    """Which escrow of the pair."""
    SRC = "src"
    DST = "dst"


class AddressConfidence(Enum):
    """How an escrow address was obtained."""
    CONFIRMED = "confirmed"   # From receipt / chain events, cross-checked
    DERIVED = "derived"       # Deterministic derivation query only
    FALLBACK = "fallback"     # Operator-supplied expected address (degraded)


# =============================================================================
# Secret / Hashlock
# =============================================================================

def generate_secret() -> bytes:
    """
    Generate a fresh 32-byte swap secret.

    Uses the OS CSPRNG. If it is unavailable the error propagates and the
    swap must not be created.
    """
    return secrets.token_bytes(SECRET_SIZE)


def commit(secret: bytes) -> bytes:
    """
    Compute the hashlock for a secret: keccak256(secret).

    Args:
        secret: 32-byte secret

    Returns:
        32-byte hashlock
    """
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != SECRET_SIZE:
        raise ValidationError(f"Secret must be {SECRET_SIZE} bytes")
    return bytes(Web3.keccak(bytes(secret)))


def verify_secret(secret: bytes, hashlock: bytes) -> bool:
    """Check that keccak256(secret) == hashlock."""
    try:
        return commit(secret) == bytes(hashlock)
    except (ValidationError, TypeError):
        return False


def to_hex(value: bytes) -> str:
    """Bytes to 0x-prefixed hex."""
    return "0x" + bytes(value).hex()


def from_hex(value: Union[str, bytes]) -> bytes:
    """0x-prefixed or bare hex to bytes. Bytes pass through."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value.startswith("0x") or value.startswith("0X"):
        value = value[2:]
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise ValidationError(f"Invalid hex value: {e}")


def short_hex(value: bytes) -> str:
    """First 16 hex chars, for logs."""
    return bytes(value).hex()[:16] + "..."


# =============================================================================
# Constants
# =============================================================================

# Seconds kept clear of a timelock boundary before acting near it
DEFAULT_SAFETY_BUFFER_SECONDS = 30

# Transient RPC retry policy
DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_MAX = 30.0

# Demo schedule from the Sepolia <-> Osmosis testnet runs (seconds)
DEFAULT_OFFSETS = {
    "src_withdrawal": 10,
    "src_public_withdrawal": 120,
    "src_cancellation": 121,
    "src_public_cancellation": 122,
    "dst_withdrawal": 10,
    "dst_public_withdrawal": 100,
    "dst_cancellation": 101,
}
