"""
Bounded exponential backoff for TransientChainError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..errors import TransientChainError, PendingTransactionError

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry transient failures up to max_attempts, sleeping base * 2**n (capped)."""
    max_attempts: int = 4
    backoff_base: float = 2.0
    backoff_max: float = 30.0
    sleep: Callable[[float], None] = time.sleep

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    def call(self, fn: Callable[[], T], label: str,
             before_retry: Optional[Callable[[float], None]] = None) -> T:
        """
        Run fn, retrying TransientChainError.

        Args:
            fn: Zero-argument callable
            label: Name for logs
            before_retry: Called with the upcoming delay before each sleep.
                May raise to stop retrying (e.g. a timelock deadline).

        Raises:
            TransientChainError: the last failure once attempts are exhausted
        """
        attempt = 0
        while True:
            try:
                return fn()
            except TransientChainError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    log.error(f"{label}: giving up after {attempt} attempts: {e}")
                    raise

                delay = self.delay(attempt - 1)
                if before_retry:
                    before_retry(delay)

                log.warning(f"{label}: transient failure ({e}), retry {attempt}/"
                            f"{self.max_attempts - 1} in {delay:.1f}s")
                self.sleep(delay)

    def submit(self, send: Callable[[Optional[str]], T], label: str,
               pending: Optional[str] = None,
               on_pending: Optional[Callable[[str], None]] = None,
               before_retry: Optional[Callable[[float], None]] = None) -> T:
        """
        Run a transaction with retries, never broadcasting it twice.

        send(pending_tx) broadcasts when pending_tx is None and otherwise
        only waits for that tx. Once an attempt raises
        PendingTransactionError, every later attempt waits for its tx_ref.

        Args:
            pending: tx already broadcast by an earlier run of this step
            on_pending: Called with the tx_ref as soon as it is known
        """
        def attempt():
            nonlocal pending
            try:
                return send(pending)
            except PendingTransactionError as e:
                if e.tx_ref != pending:
                    pending = e.tx_ref
                    if on_pending:
                        on_pending(e.tx_ref)
                raise

        return self.call(attempt, label, before_retry=before_retry)
