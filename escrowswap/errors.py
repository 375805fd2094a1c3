"""
Error taxonomy for escrowswap.

Propagation policy:
- ValidationError, AddressDerivationMismatch: abort the whole session
- TransientChainError: retried locally, surfaced after retries are exhausted
- PendingTransactionError: broadcast but unconfirmed; retries keep waiting
  for the same tx
- RejectedTransactionError, TimingViolationError, InvalidSecretError:
  fail the step, the session record is kept for manual recovery
"""

from typing import Optional


class SwapError(Exception):
    """Base class for all swap coordination errors."""

    # Errors of this kind halt the session when raised from a step
    aborts_session = False

    def __init__(self, message: str, step: Optional[str] = None,
                 chain: Optional[str] = None, funds_at_risk: bool = False):
        super().__init__(message)
        self.step = step
        self.chain = chain
        self.funds_at_risk = funds_at_risk

    def to_dict(self):
        return {
            "type": type(self).__name__,
            "message": str(self),
            "step": self.step,
            "chain": self.chain,
            "funds_at_risk": self.funds_at_risk,
        }


class ValidationError(SwapError):
    """Bad timelock ordering or malformed immutables. Caught before any chain call."""
    aborts_session = True


class AddressDerivationMismatch(SwapError):
    """Source and destination disagree on escrow identity."""
    aborts_session = True


class TransientChainError(SwapError):
    """RPC or network failure. Safe to retry with the same payload."""


class PendingTransactionError(TransientChainError):
    """
    The transaction was broadcast but not confirmed in time.

    A retry waits for tx_ref again instead of resending: a second
    create_escrow_dst would instantiate and fund a second escrow.
    """

    def __init__(self, message: str, tx_ref: str, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_ref = tx_ref


class RejectedTransactionError(SwapError):
    """The chain executed the transaction and it reverted or failed."""

    def __init__(self, message: str, tx_ref: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_ref = tx_ref


class TimingViolationError(SwapError):
    """Action attempted outside its timelock window."""

    def __init__(self, message: str, now: Optional[int] = None,
                 window: Optional[tuple] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.now = now
        self.window = window


class InvalidSecretError(SwapError):
    """Secret does not commit to the session hashlock."""


class InvalidStateError(SwapError):
    """Transition requested from the wrong lifecycle state."""


class SessionBusyError(SwapError):
    """Another lifecycle driver is acting on the same session."""
