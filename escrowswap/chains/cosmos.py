"""
CosmWasm destination-chain adapter for escrowswap.

Transactions go through the chain CLI (osmosisd, wasmd, ...):
    <cli> tx wasm execute <contract> '<json>' --from <key> ... --output json
Queries and inclusion polling use the LCD REST API.

Messages:
- EscrowFactory: create_escrow_dst { immutables, src_cancellation_timestamp }
- EscrowFactory query: address_of_escrow_dst { immutables }
- EscrowDst: withdraw { secret, immutables }, cancel { immutables }
"""

import base64
import json
import logging
import re
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..config import CosmosConfig
from ..core import short_hex
from ..errors import (
    TransientChainError, PendingTransactionError, RejectedTransactionError, ValidationError,
)
from ..escrow.immutables import Immutables
from .base import DestinationChainAdapter, Funding, DeployResult

log = logging.getLogger(__name__)

# Event attributes that may carry the instantiated escrow address
ESCROW_ADDRESS_KEYS = ("escrow_address", "_contract_address", "contract_address", "address")
ESCROW_EVENT_TYPES = ("wasm", "instantiate")

# CheckTx codes worth retrying (cosmos-sdk: 32 = account sequence mismatch, 19 = tx in mempool cache)
RETRYABLE_CODES = {19, 32}

TRANSIENT_CLI_MARKERS = (
    "connection refused",
    "timed out",
    "timeout",
    "post failed",
    "eof",
    "account sequence mismatch",
    "no such host",
)

TX_POLL_INTERVAL = 2.0

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def parse_block_time(value: str) -> int:
    """RFC3339 block time (nanosecond precision) to unix seconds."""
    main = value.rstrip("Z").split(".")[0]
    if "+" in main:
        main = main.split("+")[0]
    dt = datetime.strptime(main, "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def is_bech32_address(value: Any, prefix: str) -> bool:
    """Shape check: <prefix>1 followed by at least 38 bech32 characters."""
    if not isinstance(value, str):
        return False
    return re.fullmatch(rf"{re.escape(prefix)}1[{BECH32_CHARSET}]{{38,}}", value) is not None


def extract_escrow_address(events: List[Dict[str, Any]], factory: str = "") -> Optional[str]:
    """
    Find the instantiated escrow address in tx events.

    Keys are tried in ESCROW_ADDRESS_KEYS order. A wasm event's
    _contract_address is the executing contract, so it only counts on
    instantiate events, and the factory's own address is never returned.
    """
    for key in ESCROW_ADDRESS_KEYS:
        for event in events or []:
            event_type = event.get("type")
            if event_type not in ESCROW_EVENT_TYPES:
                continue
            if key == "_contract_address" and event_type != "instantiate":
                continue
            for attr in event.get("attributes", []):
                value = attr.get("value")
                if attr.get("key") == key and value and value != factory:
                    return value
    return None


class CosmosEscrowAdapter(DestinationChainAdapter):
    """Destination escrow adapter for CosmWasm chains."""

    chain = "cosmos"

    def __init__(self, config: CosmosConfig):
        self.config = config
        self.cli_path = config.cli_path or self._find_cli()
        self._http: Optional[httpx.Client] = None

    def _find_cli(self) -> Optional[Path]:
        """Find a CosmWasm chain binary."""
        paths = [
            Path.home() / "go" / "bin" / "osmosisd",
            Path("/usr/local/bin/osmosisd"),
            Path.home() / "go" / "bin" / "wasmd",
            Path("/usr/local/bin/wasmd"),
        ]
        for p in paths:
            if p.exists():
                return p
        return None

    @property
    def http(self) -> httpx.Client:
        """Reusable LCD client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.Client(base_url=self.config.lcd_url,
                                      timeout=self.config.http_timeout)
        return self._http

    def close(self):
        if self._http is not None:
            self._http.close()

    # =========================================================================
    # CLI transactions
    # =========================================================================

    def _build_execute_cmd(self, contract: str, msg: Dict[str, Any],
                           funds: Optional[str] = None) -> List[str]:
        if not self.cli_path:
            raise ValidationError("Cosmos chain CLI not found (set COSMOS_CLI_PATH)")
        if not self.config.key_name:
            raise ValidationError("Cosmos signing key not configured")

        cmd = [
            str(self.cli_path), "tx", "wasm", "execute", contract, json.dumps(msg),
            "--from", self.config.key_name,
            "--keyring-backend", self.config.keyring_backend,
            "--chain-id", self.config.chain_id,
            "--node", self.config.rpc_url,
            "--gas", "auto",
            "--gas-prices", self.config.gas_prices,
            "--gas-adjustment", str(self.config.gas_adjustment),
            "--broadcast-mode", "sync",
            "--output", "json",
            "-y",
        ]
        if funds:
            cmd.extend(["--amount", funds])
        return cmd

    def _execute(self, contract: str, msg: Dict[str, Any], label: str,
                 funds: Optional[str] = None,
                 pending_tx: Optional[str] = None) -> Dict[str, Any]:
        """
        Broadcast a wasm execute and wait for inclusion.

        With pending_tx, nothing is broadcast; only that tx is awaited.

        Returns:
            tx_response dict from the LCD
        """
        if pending_tx:
            log.info(f"{label}: waiting for pending TX {pending_tx}")
            return self._check_delivered(self._wait_for_tx(pending_tx, label), pending_tx, label)

        cmd = self._build_execute_cmd(contract, msg, funds)
        log.info(f"Cosmos {label}: contract={contract}, funds={funds or '-'}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.cli_timeout
            )
        except subprocess.TimeoutExpired:
            raise TransientChainError(f"{label} CLI timeout", chain=self.chain)

        if result.returncode != 0:
            error = result.stderr.strip() or result.stdout.strip()
            if any(marker in error.lower() for marker in TRANSIENT_CLI_MARKERS):
                raise TransientChainError(f"{label} failed: {error}", chain=self.chain)
            raise RejectedTransactionError(f"{label} rejected: {error}", chain=self.chain)

        try:
            broadcast = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise TransientChainError(f"{label} returned invalid JSON: {e}", chain=self.chain)

        txhash = broadcast.get("txhash")
        code = int(broadcast.get("code", 0))
        if code != 0:
            message = f"{label} CheckTx failed (code={code}): {broadcast.get('raw_log', '')}"
            if code in RETRYABLE_CODES:
                raise TransientChainError(message, chain=self.chain)
            raise RejectedTransactionError(message, tx_ref=txhash, chain=self.chain)
        if not txhash:
            raise TransientChainError(f"{label} broadcast returned no txhash", chain=self.chain)

        log.info(f"{label} TX: {txhash}")

        return self._check_delivered(self._wait_for_tx(txhash, label), txhash, label)

    def _check_delivered(self, tx_response: Dict[str, Any], txhash: str,
                         label: str) -> Dict[str, Any]:
        if int(tx_response.get("code", 0)) != 0:
            raise RejectedTransactionError(
                f"{label} failed: {tx_response.get('raw_log', '')}",
                tx_ref=txhash, chain=self.chain)
        return tx_response

    def _wait_for_tx(self, txhash: str, label: str) -> Dict[str, Any]:
        """Poll the LCD until the tx is included or cli_timeout elapses."""
        deadline = time.time() + self.config.cli_timeout
        while time.time() < deadline:
            try:
                resp = self.http.get(f"/cosmos/tx/v1beta1/txs/{txhash}")
            except httpx.HTTPError as e:
                log.warning(f"{label} inclusion poll failed: {e}")
                time.sleep(TX_POLL_INTERVAL)
                continue

            if resp.status_code == 200:
                return resp.json().get("tx_response", {})
            time.sleep(TX_POLL_INTERVAL)

        raise PendingTransactionError(
            f"{label} not included after {self.config.cli_timeout}s ({txhash})",
            tx_ref=txhash, chain=self.chain)

    # =========================================================================
    # Escrow operations
    # =========================================================================

    def deploy(self, immutables: Immutables, src_cancellation_timestamp: int,
               funding: Funding, pending_tx: Optional[str] = None) -> DeployResult:
        """EscrowFactory.create_escrow_dst, funded with amount + safety deposit."""
        if not self.config.escrow_factory:
            raise ValidationError("Cosmos escrow factory address not configured")

        denom = funding.denom or self.config.denom
        funds = f"{funding.amount + funding.safety_deposit}{denom}"
        msg = {
            "create_escrow_dst": {
                "immutables": immutables.cosmwasm_msg(),
                "src_cancellation_timestamp": src_cancellation_timestamp,
            }
        }

        log.info(f"Deploying dst escrow: hashlock={short_hex(immutables.hashlock)}, "
                 f"src_cancellation={src_cancellation_timestamp}")

        tx = self._execute(self.config.escrow_factory, msg, "create_escrow_dst", funds=funds,
                           pending_tx=pending_tx)

        escrow_address = extract_escrow_address(tx.get("events", []), self.config.escrow_factory)
        if not escrow_address:
            log.warning(f"No escrow address in create_escrow_dst events ({tx.get('txhash')})")

        deployed_at = None
        if tx.get("timestamp"):
            deployed_at = parse_block_time(tx["timestamp"])

        return DeployResult(
            tx_ref=tx.get("txhash", ""),
            escrow_address=escrow_address,
            deployed_at=deployed_at,
        )

    def withdraw(self, escrow_address: str, secret: bytes, immutables: Immutables,
                 pending_tx: Optional[str] = None) -> str:
        msg = {
            "withdraw": {
                "secret": base64.b64encode(bytes(secret)).decode(),
                "immutables": immutables.cosmwasm_msg(),
            }
        }
        tx = self._execute(escrow_address, msg, "withdraw", pending_tx=pending_tx)
        return tx.get("txhash", "")

    def cancel(self, escrow_address: str, immutables: Immutables,
               pending_tx: Optional[str] = None) -> str:
        msg = {"cancel": {"immutables": immutables.cosmwasm_msg()}}
        tx = self._execute(escrow_address, msg, "cancel", pending_tx=pending_tx)
        return tx.get("txhash", "")

    # =========================================================================
    # Queries
    # =========================================================================

    def _smart_query(self, contract: str, query: Dict[str, Any]) -> Any:
        encoded = base64.b64encode(json.dumps(query).encode()).decode()
        try:
            resp = self.http.get(f"/cosmwasm/wasm/v1/contract/{contract}/smart/{encoded}")
        except httpx.HTTPError as e:
            raise TransientChainError(f"Smart query failed: {e}", chain=self.chain)

        if resp.status_code >= 500:
            raise TransientChainError(f"Smart query HTTP {resp.status_code}", chain=self.chain)
        if resp.status_code != 200:
            raise RejectedTransactionError(
                f"Smart query rejected (HTTP {resp.status_code}): {resp.text[:200]}",
                chain=self.chain)
        return resp.json().get("data")

    def derive_address(self, immutables: Immutables) -> Optional[str]:
        """
        EscrowFactory address_of_escrow_dst query.

        None if the factory refuses the query or answers with something that
        is not an address of this chain (factories without the query reply
        "no queries").
        """
        if not self.config.escrow_factory:
            return None
        try:
            address = self._smart_query(
                self.config.escrow_factory,
                {"address_of_escrow_dst": {"immutables": immutables.cosmwasm_msg()}},
            )
        except RejectedTransactionError as e:
            log.warning(f"address_of_escrow_dst unavailable: {e}")
            return None
        if not is_bech32_address(address, self.config.address_prefix):
            log.warning(f"address_of_escrow_dst returned no address: {address!r}")
            return None
        return address

    def chain_time(self) -> int:
        try:
            resp = self.http.get("/cosmos/base/tendermint/v1beta1/blocks/latest")
            resp.raise_for_status()
            header = resp.json()["block"]["header"]
        except (httpx.HTTPError, KeyError) as e:
            raise TransientChainError(f"Latest block query failed: {e}", chain=self.chain)
        return parse_block_time(header["time"])
