"""
Configuration for escrowswap.

Configs are plain dataclasses passed explicitly to adapters and the
coordinator. from_env() reads the process environment once, at construction.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .core import (
    DEFAULT_SAFETY_BUFFER_SECONDS, DEFAULT_MAX_ATTEMPTS,
    DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_MAX,
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EVMConfig:
    """EVM chain configuration (source side)."""
    network: str = "sepolia"
    rpc_url: str = "https://ethereum-sepolia-rpc.publicnode.com"
    chain_id: int = 11155111
    escrow_factory: str = ""        # EscrowFactory (addressOfEscrowSrc/Dst views)
    resolver: str = ""              # Resolver (deploySrc/deployDst/withdraw/cancel)
    private_key: str = ""           # Signer for resolver calls
    tx_timeout: int = 120           # Receipt wait, seconds
    gas_limit: int = 500000
    gas_price_multiplier: float = 1.1

    @classmethod
    def from_env(cls, prefix: str = "EVM_") -> "EVMConfig":
        defaults = cls()
        return cls(
            network=os.environ.get(f"{prefix}NETWORK", defaults.network),
            rpc_url=os.environ.get(f"{prefix}RPC_URL", defaults.rpc_url),
            chain_id=int(os.environ.get(f"{prefix}CHAIN_ID", defaults.chain_id)),
            escrow_factory=os.environ.get(f"{prefix}ESCROW_FACTORY", ""),
            resolver=os.environ.get(f"{prefix}RESOLVER", ""),
            private_key=os.environ.get(f"{prefix}PRIVATE_KEY", ""),
            tx_timeout=int(os.environ.get(f"{prefix}TX_TIMEOUT", defaults.tx_timeout)),
            gas_limit=int(os.environ.get(f"{prefix}GAS_LIMIT", defaults.gas_limit)),
        )


@dataclass
class CosmosConfig:
    """CosmWasm chain configuration (destination side)."""
    chain_id: str = "osmo-test-5"
    rpc_url: str = "https://rpc.testnet.osmosis.zone:443"
    lcd_url: str = "https://lcd.testnet.osmosis.zone"
    cli_path: Optional[Path] = None      # osmosisd / wasmd binary
    key_name: str = ""                   # Keyring entry used to sign
    keyring_backend: str = "test"
    escrow_factory: str = ""             # EscrowFactory contract address
    denom: str = "uosmo"
    address_prefix: str = "osmo"         # bech32 prefix of account and contract addresses
    gas_prices: str = "0.025uosmo"
    gas_adjustment: float = 1.4
    cli_timeout: int = 90
    http_timeout: float = 15.0

    @classmethod
    def from_env(cls, prefix: str = "COSMOS_") -> "CosmosConfig":
        defaults = cls()
        cli = os.environ.get(f"{prefix}CLI_PATH")
        return cls(
            chain_id=os.environ.get(f"{prefix}CHAIN_ID", defaults.chain_id),
            rpc_url=os.environ.get(f"{prefix}RPC_URL", defaults.rpc_url),
            lcd_url=os.environ.get(f"{prefix}LCD_URL", defaults.lcd_url),
            cli_path=Path(cli) if cli else None,
            key_name=os.environ.get(f"{prefix}KEY_NAME", ""),
            keyring_backend=os.environ.get(f"{prefix}KEYRING_BACKEND", defaults.keyring_backend),
            escrow_factory=os.environ.get(f"{prefix}ESCROW_FACTORY", ""),
            denom=os.environ.get(f"{prefix}DENOM", defaults.denom),
            address_prefix=os.environ.get(f"{prefix}ADDRESS_PREFIX", defaults.address_prefix),
            gas_prices=os.environ.get(f"{prefix}GAS_PRICES", defaults.gas_prices),
        )


@dataclass
class CoordinatorConfig:
    """Escrow lifecycle coordinator configuration."""
    # Retry policy for TransientChainError
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX

    # Seconds kept clear of timelock boundaries (chain clock drift + latency)
    safety_buffer_seconds: int = DEFAULT_SAFETY_BUFFER_SECONDS

    # Sleep until a withdrawal window opens instead of failing the step
    wait_for_windows: bool = True
    window_poll_interval: float = 5.0

    # Accept an operator-supplied dst escrow address when neither events
    # nor derivation produce one. Result is flagged FALLBACK.
    allow_fallback_address: bool = False
    fallback_dst_address: str = ""

    # Session log directory (None = in-memory only)
    session_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, prefix: str = "SWAP_") -> "CoordinatorConfig":
        defaults = cls()
        session_dir = os.environ.get(f"{prefix}SESSION_DIR")
        return cls(
            max_attempts=int(os.environ.get(f"{prefix}MAX_ATTEMPTS", defaults.max_attempts)),
            backoff_base=float(os.environ.get(f"{prefix}BACKOFF_BASE", defaults.backoff_base)),
            backoff_max=float(os.environ.get(f"{prefix}BACKOFF_MAX", defaults.backoff_max)),
            safety_buffer_seconds=int(os.environ.get(
                f"{prefix}SAFETY_BUFFER", defaults.safety_buffer_seconds)),
            wait_for_windows=_env_bool(f"{prefix}WAIT_FOR_WINDOWS", defaults.wait_for_windows),
            allow_fallback_address=_env_bool(f"{prefix}ALLOW_FALLBACK_ADDRESS", False),
            fallback_dst_address=os.environ.get(f"{prefix}FALLBACK_DST_ADDRESS", ""),
            session_dir=Path(os.path.expanduser(session_dir)) if session_dir else None,
        )
