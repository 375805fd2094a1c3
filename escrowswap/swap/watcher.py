"""
Cancellation Watcher for escrowswap.

Polls registered swap sessions and reports escrows that have passed their
cancellation time while still holding funds. Optionally cancels them.

Runs as a background service next to the coordinator.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from ..core import Side
from ..errors import SwapError, SessionBusyError
from .coordinator import EscrowCoordinator
from .session import SwapSession

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: float = 5.0      # seconds
    auto_cancel: bool = False       # Call coordinator.cancel when due


class CancellationWatcher:
    """
    Background service that watches sessions for due cancellations.

    Events:
    - on_cancellation_due: escrow passed its cancellation time (once per side)
    - on_cancelled: auto_cancel succeeded
    """

    def __init__(self, coordinator: EscrowCoordinator, config: WatcherConfig = None):
        self.coordinator = coordinator
        self.config = config or WatcherConfig()

        # Callbacks
        self.on_cancellation_due: Optional[Callable[[SwapSession, Side], None]] = None
        self.on_cancelled: Optional[Callable[[SwapSession, Side], None]] = None

        self._sessions: Dict[str, SwapSession] = {}
        self._notified: Set[Tuple[str, Side]] = set()
        self._guard = threading.Lock()

        # State
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def watch(self, session: SwapSession):
        with self._guard:
            self._sessions[session.swap_id] = session

    def unwatch(self, swap_id: str):
        with self._guard:
            self._sessions.pop(swap_id, None)
            self._notified = {key for key in self._notified if key[0] != swap_id}

    def start(self):
        """Start watcher in background thread."""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()
        log.info("Cancellation watcher started")

    def stop(self):
        """Stop watcher."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Cancellation watcher stopped")

    def _watch_loop(self):
        while self._running:
            try:
                self.check_once()
            except Exception as e:
                log.error(f"Watcher error: {e}")
            time.sleep(self.config.poll_interval)

    def check_once(self):
        """One polling pass over all watched sessions."""
        with self._guard:
            sessions = list(self._sessions.values())

        for session in sessions:
            if session.is_terminal:
                self.unwatch(session.swap_id)
                continue
            # Destination first: it becomes cancellable before the source
            for side in (Side.DST, Side.SRC):
                self._check_side(session, side)

    def _check_side(self, session: SwapSession, side: Side):
        try:
            due = self.coordinator.cancellation_due(session, side)
        except SwapError as e:
            log.warning(f"[{session.swap_id}] {side.value} cancellation check failed: {e}")
            return
        if not due:
            return

        key = (session.swap_id, side)
        with self._guard:
            first = key not in self._notified
            self._notified.add(key)
        if first:
            log.warning(f"[{session.swap_id}] {side.value} escrow {session.address(side)} "
                        f"is past its cancellation time")
            if self.on_cancellation_due:
                self.on_cancellation_due(session, side)

        if not self.config.auto_cancel:
            return

        try:
            self.coordinator.cancel(session, side)
        except SessionBusyError:
            log.info(f"[{session.swap_id}] busy, retrying {side.value} cancel next poll")
            return
        except SwapError as e:
            log.error(f"[{session.swap_id}] auto-cancel {side.value} failed: {e}")
            return

        if self.on_cancelled:
            self.on_cancelled(session, side)
