"""
Swap session state and session log persistence.

A SwapSession is owned by one coordinator and mutated only while its lock
is held. SessionStore writes one JSON file per session so a crashed driver
can be inspected and recovered.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core import (
    SwapState, EscrowStatus, Side, AddressConfidence, TERMINAL_STATES,
    to_hex, from_hex,
)
from ..escrow.immutables import Immutables

log = logging.getLogger(__name__)


def _encode_tx_keys(refs: Dict[Tuple[str, str], str]) -> Dict[str, str]:
    return {f"{chain}/{step}": ref for (chain, step), ref in refs.items()}


def _decode_tx_keys(data: Dict[str, str]) -> Dict[Tuple[str, str], str]:
    refs = {}
    for key, ref in data.items():
        chain, _, step = key.partition("/")
        refs[(chain, step)] = ref
    return refs


@dataclass
class StepRecord:
    """One entry of the session log."""
    chain: str
    step: str
    status: str                         # "ok" or "failed"
    immutables: Optional[Dict[str, Any]] = None
    escrow_address: Optional[str] = None
    tx_ref: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    timestamp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "step": self.step,
            "status": self.status,
            "immutables": self.immutables,
            "escrow_address": self.escrow_address,
            "tx_ref": self.tx_ref,
            "error": self.error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(**data)


@dataclass
class SwapSession:
    """Coordinator-owned state for one swap."""
    swap_id: str
    secret: Optional[bytes]
    hashlock: bytes
    src_immutables: Immutables
    dst_immutables: Immutables
    state: SwapState = SwapState.CREATED
    created_at: int = 0

    # Escrow addresses and how they were obtained
    src_address: Optional[str] = None
    dst_address: Optional[str] = None
    src_confidence: Optional[AddressConfidence] = None
    dst_confidence: Optional[AddressConfidence] = None

    # Chain-assigned deployment timestamps
    src_deployed_at: Optional[int] = None
    dst_deployed_at: Optional[int] = None

    src_status: EscrowStatus = EscrowStatus.UNDEPLOYED
    dst_status: EscrowStatus = EscrowStatus.UNDEPLOYED

    # (chain, step) -> tx reference
    tx_log: Dict[Tuple[str, str], str] = field(default_factory=dict)
    # (chain, step) -> broadcast tx not yet confirmed; resumed, never resent
    pending_txs: Dict[Tuple[str, str], str] = field(default_factory=dict)
    steps: List[StepRecord] = field(default_factory=list)

    secret_revealed: bool = False
    src_cancel_required: bool = False
    halted: bool = False
    error: Optional[Dict[str, Any]] = None

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def immutables(self, side: Side) -> Immutables:
        return self.src_immutables if side == Side.SRC else self.dst_immutables

    def address(self, side: Side) -> Optional[str]:
        return self.src_address if side == Side.SRC else self.dst_address

    def status(self, side: Side) -> EscrowStatus:
        return self.src_status if side == Side.SRC else self.dst_status

    def deployed_at(self, side: Side) -> Optional[int]:
        return self.src_deployed_at if side == Side.SRC else self.dst_deployed_at

    def set_status(self, side: Side, status: EscrowStatus):
        if side == Side.SRC:
            self.src_status = status
        else:
            self.dst_status = status

    def set_address(self, side: Side, address: Optional[str],
                    confidence: Optional[AddressConfidence]):
        if side == Side.SRC:
            self.src_address, self.src_confidence = address, confidence
        else:
            self.dst_address, self.dst_confidence = address, confidence

    def record(self, chain: str, step: str, status: str,
               immutables: Optional[Immutables] = None,
               escrow_address: Optional[str] = None,
               tx_ref: Optional[str] = None,
               error: Optional[Dict[str, Any]] = None) -> StepRecord:
        """Append a step to the session log."""
        entry = StepRecord(
            chain=chain,
            step=step,
            status=status,
            immutables=immutables.to_dict() if immutables else None,
            escrow_address=escrow_address,
            tx_ref=tx_ref,
            error=error,
            timestamp=int(time.time()),
        )
        self.steps.append(entry)
        if tx_ref:
            self.tx_log[(chain, step)] = tx_ref
        return entry

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        """
        JSON-safe snapshot.

        The secret is included only when asked for and already public
        on-chain; before reveal it must never leave the process.
        """
        data = {
            "swap_id": self.swap_id,
            "state": self.state.value,
            "created_at": self.created_at,
            "hashlock": to_hex(self.hashlock),
            "src_immutables": self.src_immutables.to_dict(),
            "dst_immutables": self.dst_immutables.to_dict(),
            "src_address": self.src_address,
            "dst_address": self.dst_address,
            "src_confidence": self.src_confidence.value if self.src_confidence else None,
            "dst_confidence": self.dst_confidence.value if self.dst_confidence else None,
            "src_deployed_at": self.src_deployed_at,
            "dst_deployed_at": self.dst_deployed_at,
            "src_status": self.src_status.value,
            "dst_status": self.dst_status.value,
            "tx_log": _encode_tx_keys(self.tx_log),
            "pending_txs": _encode_tx_keys(self.pending_txs),
            "steps": [s.to_dict() for s in self.steps],
            "secret_revealed": self.secret_revealed,
            "src_cancel_required": self.src_cancel_required,
            "halted": self.halted,
            "error": self.error,
        }
        if include_secret and self.secret_revealed and self.secret is not None:
            data["secret"] = to_hex(self.secret)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapSession":
        secret = data.get("secret")
        return cls(
            swap_id=data["swap_id"],
            secret=from_hex(secret) if secret else None,
            hashlock=from_hex(data["hashlock"]),
            src_immutables=Immutables.from_dict(data["src_immutables"]),
            dst_immutables=Immutables.from_dict(data["dst_immutables"]),
            state=SwapState(data["state"]),
            created_at=data.get("created_at", 0),
            src_address=data.get("src_address"),
            dst_address=data.get("dst_address"),
            src_confidence=AddressConfidence(data["src_confidence"]) if data.get("src_confidence") else None,
            dst_confidence=AddressConfidence(data["dst_confidence"]) if data.get("dst_confidence") else None,
            src_deployed_at=data.get("src_deployed_at"),
            dst_deployed_at=data.get("dst_deployed_at"),
            src_status=EscrowStatus(data.get("src_status", EscrowStatus.UNDEPLOYED.value)),
            dst_status=EscrowStatus(data.get("dst_status", EscrowStatus.UNDEPLOYED.value)),
            tx_log=_decode_tx_keys(data.get("tx_log", {})),
            pending_txs=_decode_tx_keys(data.get("pending_txs", {})),
            steps=[StepRecord.from_dict(s) for s in data.get("steps", [])],
            secret_revealed=data.get("secret_revealed", False),
            src_cancel_required=data.get("src_cancel_required", False),
            halted=data.get("halted", False),
            error=data.get("error"),
        )


class SessionStore:
    """
    One JSON file per session under a directory.

    Write failures are logged, never raised: losing a log write must not
    interrupt an in-flight swap.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, swap_id: str) -> Path:
        return self.directory / f"{swap_id}.json"

    def save(self, session: SwapSession):
        path = self.path_for(session.swap_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(session.to_dict(include_secret=True), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            log.error(f"Failed to save session {session.swap_id}: {e}")

    def load(self, swap_id: str) -> Optional[SwapSession]:
        path = self.path_for(swap_id)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return SwapSession.from_dict(json.load(f))

    def list_ids(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def load_all(self) -> List[SwapSession]:
        sessions = []
        for swap_id in self.list_ids():
            session = self.load(swap_id)
            if session:
                sessions.append(session)
        log.info(f"Loaded {len(sessions)} sessions from {self.directory}")
        return sessions
