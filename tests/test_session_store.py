#!/usr/bin/env python3
"""
Session Log Persistence Tests

1. Secret never written before it is revealed on-chain
2. Sessions load back with state, addresses and tx log
3. Failed steps are persisted for manual recovery
4. Unconfirmed transactions survive a restart and are awaited, not resent
"""

import sys
import os
import json
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from escrowswap.core import SwapState, EscrowStatus, AddressConfidence
from escrowswap.chains.base import Funding
from escrowswap.errors import RejectedTransactionError, PendingTransactionError
from escrowswap.swap.coordinator import EscrowCoordinator
from escrowswap.swap.session import SessionStore, SwapSession

from fakes import FakeClock, FakeSource, FakeDestination, make_config, open_default, SRC_ESCROW

SRC_FUNDING = Funding(amount=10**13, safety_deposit=10**14)
DST_FUNDING = Funding(amount=10, safety_deposit=10000, denom="uosmo")


class TestSessionStore(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.directory = Path(self._tmp.name) / "sessions"
        self.clock = FakeClock()
        self.src = FakeSource(self.clock)
        self.dst = FakeDestination(self.clock)
        self.coordinator = EscrowCoordinator(
            self.src, self.dst, make_config(session_dir=self.directory),
            sleep=self.clock.sleep)
        self.session = open_default(self.coordinator)

    def tearDown(self):
        self._tmp.cleanup()

    def read_raw(self):
        with open(self.directory / f"{self.session.swap_id}.json") as f:
            return json.load(f)

    def test_store_created_from_config(self):
        self.assertIsInstance(self.coordinator.store, SessionStore)
        self.assertEqual(self.coordinator.store.list_ids(), [self.session.swap_id])

    def test_secret_stripped_before_reveal(self):
        self.coordinator.deploy_src(self.session, SRC_FUNDING)
        self.coordinator.deploy_dst(self.session, DST_FUNDING)

        raw = self.read_raw()
        self.assertNotIn("secret", raw)
        self.assertNotIn(self.session.secret.hex(), json.dumps(raw))
        self.assertFalse(raw["secret_revealed"])

    def test_secret_written_after_reveal(self):
        self.coordinator.run(self.session, SRC_FUNDING, DST_FUNDING)
        raw = self.read_raw()
        self.assertEqual(raw["secret"], "0x" + self.session.secret.hex())
        self.assertEqual(raw["state"], SwapState.SRC_WITHDRAWN.value)

    def test_round_trip(self):
        self.coordinator.run(self.session, SRC_FUNDING, DST_FUNDING)
        loaded = self.coordinator.store.load(self.session.swap_id)

        self.assertIsInstance(loaded, SwapSession)
        self.assertEqual(loaded.state, SwapState.SRC_WITHDRAWN)
        self.assertEqual(loaded.secret, self.session.secret)
        self.assertEqual(loaded.hashlock, self.session.hashlock)
        self.assertEqual(loaded.src_immutables, self.session.src_immutables)
        self.assertEqual(loaded.dst_immutables, self.session.dst_immutables)
        self.assertEqual(loaded.src_address, SRC_ESCROW)
        self.assertEqual(loaded.src_confidence, AddressConfidence.DERIVED)
        self.assertEqual(loaded.dst_status, EscrowStatus.WITHDRAWN)
        self.assertEqual(loaded.tx_log, self.session.tx_log)
        self.assertEqual(len(loaded.steps), 4)

    def test_failed_step_persisted(self):
        self.dst.deploy_errors = [RejectedTransactionError("out of gas", tx_ref="ABC")]
        self.coordinator.deploy_src(self.session, SRC_FUNDING)
        with self.assertRaises(RejectedTransactionError):
            self.coordinator.deploy_dst(self.session, DST_FUNDING)

        loaded = self.coordinator.store.load(self.session.swap_id)
        self.assertEqual(loaded.state, SwapState.SRC_DEPLOYED)
        self.assertIsNone(loaded.secret)
        self.assertEqual(loaded.steps[-1].status, "failed")
        self.assertEqual(loaded.steps[-1].tx_ref, "ABC")
        self.assertEqual(loaded.error["type"], "RejectedTransactionError")

    def test_pending_tx_resumed_after_restart(self):
        self.dst.deploy_errors = [PendingTransactionError("not included", tx_ref="DSTDEPLOY")] * 3
        self.coordinator.deploy_src(self.session, SRC_FUNDING)
        with self.assertRaises(PendingTransactionError):
            self.coordinator.deploy_dst(self.session, DST_FUNDING)

        loaded = self.coordinator.store.load(self.session.swap_id)
        self.assertEqual(loaded.pending_txs, {("cosmos", "deploy_dst"): "DSTDEPLOY"})

        fresh = EscrowCoordinator(self.src, self.dst,
                                  make_config(session_dir=self.directory),
                                  sleep=self.clock.sleep)
        fresh.adopt(loaded)
        fresh.deploy_dst(loaded, DST_FUNDING)

        self.assertEqual(len(self.dst.deploy_calls), 1)
        self.assertEqual(loaded.state, SwapState.DST_DEPLOYED)
        self.assertEqual(fresh.store.load(loaded.swap_id).pending_txs, {})

    def test_load_missing(self):
        self.assertIsNone(self.coordinator.store.load("swap_missing"))

    def test_load_all_and_adopt(self):
        other = open_default(self.coordinator)
        sessions = self.coordinator.store.load_all()
        self.assertEqual({s.swap_id for s in sessions}, {self.session.swap_id, other.swap_id})

        fresh = EscrowCoordinator(self.src, self.dst, make_config(), sleep=self.clock.sleep)
        for s in sessions:
            fresh.adopt(s)
        self.assertEqual(len(fresh.get_active_sessions()), 2)


if __name__ == "__main__":
    unittest.main()
