"""
Swap coordination for escrowswap.

Drives the source/destination escrow lifecycle of each swap.
"""

from .coordinator import EscrowCoordinator
from .session import SwapSession, SessionStore, StepRecord
from .watcher import CancellationWatcher

__all__ = ["EscrowCoordinator", "SwapSession", "SessionStore", "StepRecord", "CancellationWatcher"]
