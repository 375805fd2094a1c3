"""
In-memory chain adapters driven by a shared fake clock.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from escrowswap.chains.base import SourceChainAdapter, DestinationChainAdapter, DeployResult
from escrowswap.config import CoordinatorConfig
from escrowswap.core import DEFAULT_OFFSETS
from escrowswap.escrow import build_schedule

T0 = 1_700_000_000

MAKER = "0x" + "aa" * 20
TAKER = "0x" + "bb" * 20
SRC_ESCROW = "0x" + "cd" * 20
DST_ESCROW = "osmo1escrowdst"


class FakeClock:
    """Chain time; sleep() advances it."""

    def __init__(self, now: int = T0):
        self.now = now
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += int(seconds)


class _FakeAdapter:

    def __init__(self, clock: FakeClock):
        self.clock = clock
        # Broadcasts only; waits on an earlier tx go to `resumed`
        self.deploy_calls = []
        self.withdraw_calls = []
        self.cancel_calls = []
        self.resumed = []
        # Exceptions raised by successive calls before succeeding
        self.deploy_errors = []
        self.withdraw_errors = []
        self.derive_errors = []
        self.deploy_hook = None

    def withdraw(self, escrow_address, secret, immutables, pending_tx=None):
        if pending_tx:
            self.resumed.append(pending_tx)
        else:
            self.withdraw_calls.append((escrow_address, secret, immutables))
        if self.withdraw_errors:
            raise self.withdraw_errors.pop(0)
        return f"0x{self.chain}withdraw"

    def cancel(self, escrow_address, immutables, pending_tx=None):
        self.cancel_calls.append((escrow_address, immutables))
        return f"0x{self.chain}cancel"

    def chain_time(self):
        return self.clock.now

    def _derived(self):
        if self.derive_errors:
            raise self.derive_errors.pop(0)
        return self.derived_address

    def _record_deploy(self, immutables, funding, pending_tx):
        if pending_tx:
            self.resumed.append(pending_tx)
        else:
            self.deploy_calls.append((immutables, funding))

    def _maybe_fail(self):
        if self.deploy_hook:
            self.deploy_hook()
        if self.deploy_errors:
            raise self.deploy_errors.pop(0)


class FakeSource(_FakeAdapter, SourceChainAdapter):
    chain = "evm"

    def __init__(self, clock: FakeClock):
        super().__init__(clock)
        self.receipt_address = None
        self.derived_address = SRC_ESCROW

    def deploy(self, immutables, funding, pending_tx=None):
        self._record_deploy(immutables, funding, pending_tx)
        self._maybe_fail()
        return DeployResult(tx_ref="0xsrcdeploy", escrow_address=self.receipt_address,
                            deployed_at=self.clock.now)

    def derive_address(self, immutables):
        return self._derived()


class FakeDestination(_FakeAdapter, DestinationChainAdapter):
    chain = "cosmos"

    def __init__(self, clock: FakeClock):
        super().__init__(clock)
        self.event_address = DST_ESCROW
        self.derived_address = None
        self.src_cancellation_seen = None

    def deploy(self, immutables, src_cancellation_timestamp, funding, pending_tx=None):
        self._record_deploy(immutables, funding, pending_tx)
        self.src_cancellation_seen = src_cancellation_timestamp
        self._maybe_fail()
        return DeployResult(tx_ref="DSTDEPLOY", escrow_address=self.event_address,
                            deployed_at=self.clock.now)

    def derive_address(self, immutables):
        return self._derived()


def default_schedule():
    return build_schedule(**DEFAULT_OFFSETS)


def make_config(**overrides):
    values = dict(max_attempts=3, backoff_base=2.0, backoff_max=30.0,
                  safety_buffer_seconds=30, wait_for_windows=True,
                  window_poll_interval=5.0)
    values.update(overrides)
    return CoordinatorConfig(**values)


def open_default(coordinator):
    return coordinator.open_session(
        order_hash=b"\x01" * 32,
        maker=MAKER,
        taker=TAKER,
        src_token="0x" + "00" * 20,
        src_amount=10**13,
        src_safety_deposit=10**14,
        dst_token="uosmo",
        dst_amount=10,
        dst_safety_deposit=10000,
        schedule=default_schedule(),
        dst_maker="osmo1maker",
        dst_taker="osmo1taker",
    )
