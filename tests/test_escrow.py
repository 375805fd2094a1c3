#!/usr/bin/env python3
"""
Escrow Descriptor Tests

1. Secret / hashlock commitment
2. Timelock schedule ordering and packing
3. Immutables building, reprojection and linkage
"""

import sys
import os
import itertools
import json
import unittest
from dataclasses import replace

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from web3 import Web3

from escrowswap.core import (
    generate_secret, commit, verify_secret, to_hex, from_hex, DEFAULT_OFFSETS,
)
from escrowswap.errors import ValidationError, AddressDerivationMismatch
from escrowswap.escrow import (
    TimelockSchedule, TimelockStage, build_schedule, schedule_from_mapping,
    OrderParams, build, reproject, assert_linked, compute_order_hash,
    fee_parameters, NATIVE_TOKEN,
)
from escrowswap.escrow.immutables import Immutables, address_to_uint

MAKER = "0x" + "aa" * 20
TAKER = "0x" + "bb" * 20


class TestSecretCommitment(unittest.TestCase):

    def test_secret_is_32_bytes(self):
        self.assertEqual(len(generate_secret()), 32)

    def test_commit_is_keccak(self):
        secret = bytes(range(32))
        self.assertEqual(commit(secret), bytes(Web3.keccak(secret)))

    def test_commit_deterministic(self):
        secret = generate_secret()
        self.assertEqual(commit(secret), commit(secret))

    def test_distinct_secrets_distinct_hashlocks(self):
        seen = set()
        for _ in range(100):
            h = commit(generate_secret())
            self.assertNotIn(h, seen, "Duplicate hashlock generated!")
            seen.add(h)

    def test_commit_rejects_wrong_length(self):
        with self.assertRaises(ValidationError):
            commit(b"\x00" * 31)
        with self.assertRaises(ValidationError):
            commit("not bytes")

    def test_verify_secret(self):
        secret = generate_secret()
        hashlock = commit(secret)
        self.assertTrue(verify_secret(secret, hashlock))
        self.assertFalse(verify_secret(generate_secret(), hashlock))
        self.assertFalse(verify_secret(b"short", hashlock))

    def test_hex_helpers(self):
        self.assertEqual(to_hex(b"\x01\xff"), "0x01ff")
        self.assertEqual(from_hex("0x01ff"), b"\x01\xff")
        self.assertEqual(from_hex("01ff"), b"\x01\xff")
        with self.assertRaises(ValidationError):
            from_hex("0xzz")


class TestTimelockSchedule(unittest.TestCase):

    def test_default_schedule_valid(self):
        s = build_schedule(**DEFAULT_OFFSETS)
        self.assertEqual(s.dst_cancellation, 101)
        self.assertEqual(s.src_cancellation, 121)
        self.assertLess(s.dst_cancellation, s.src_cancellation)

    def test_destination_cancellation_after_source_rejected(self):
        offsets = dict(DEFAULT_OFFSETS, dst_cancellation=200)
        with self.assertRaises(ValidationError) as ctx:
            build_schedule(**offsets)
        self.assertIn("margin", str(ctx.exception))

    def test_equal_cancellations_rejected(self):
        offsets = dict(DEFAULT_OFFSETS, dst_cancellation=121)
        with self.assertRaises(ValidationError):
            build_schedule(**offsets)

    def test_source_chain_must_increase(self):
        offsets = dict(DEFAULT_OFFSETS, src_public_withdrawal=10)
        with self.assertRaises(ValidationError):
            build_schedule(**offsets)

    def test_destination_chain_must_increase(self):
        offsets = dict(DEFAULT_OFFSETS, dst_public_withdrawal=5)
        with self.assertRaises(ValidationError):
            build_schedule(**offsets)

    def test_rejects_non_positive_and_oversized(self):
        with self.assertRaises(ValidationError):
            build_schedule(**dict(DEFAULT_OFFSETS, src_withdrawal=0))
        with self.assertRaises(ValidationError):
            build_schedule(**dict(DEFAULT_OFFSETS, src_public_cancellation=2**32))
        with self.assertRaises(ValidationError):
            build_schedule(**dict(DEFAULT_OFFSETS, src_withdrawal=True))
        with self.assertRaises(ValidationError):
            build_schedule(**dict(DEFAULT_OFFSETS, src_withdrawal=10.0))

    def test_pack_layout(self):
        s = build_schedule(**DEFAULT_OFFSETS).with_deployed_at(1_700_000_000)
        packed = s.pack()
        expected = ((1_700_000_000 << 224) | (10 << 192) | (120 << 160) |
                    (121 << 128) | (122 << 96) | (10 << 64) | (100 << 32) | 101)
        self.assertEqual(packed, expected)
        self.assertEqual(TimelockSchedule.unpack(packed), s)

    def test_unpack_validates(self):
        bad = (10 << 192) | (120 << 160) | (121 << 128) | (122 << 96) | (10 << 64) | (100 << 32) | 200
        with self.assertRaises(ValidationError):
            TimelockSchedule.unpack(bad)

    def test_stage_time(self):
        s = build_schedule(**DEFAULT_OFFSETS).with_deployed_at(1000)
        self.assertEqual(s.stage_time(TimelockStage.SRC_CANCELLATION), 1121)
        self.assertEqual(s.stage_time(TimelockStage.DST_WITHDRAWAL, deployed_at=2000), 2010)

    def test_with_deployed_at_keeps_offsets(self):
        s = build_schedule(**DEFAULT_OFFSETS)
        d = s.with_deployed_at(5)
        self.assertEqual(s.offsets(), d.offsets())
        self.assertEqual(s.deployed_at, 0)
        with self.assertRaises(ValidationError):
            s.with_deployed_at(2**32)

    def test_schedule_from_mapping(self):
        s = schedule_from_mapping(DEFAULT_OFFSETS)
        self.assertEqual(s.offsets(), DEFAULT_OFFSETS)
        self.assertEqual(s.deployed_at, 0)
        with self.assertRaises(ValidationError):
            schedule_from_mapping({"src_withdrawal": 10})
        with self.assertRaises(ValidationError):
            schedule_from_mapping(dict(DEFAULT_OFFSETS, src_finality=5))

    def test_schedule_from_mapping_applies_deployed_at(self):
        s = schedule_from_mapping(dict(DEFAULT_OFFSETS, deployed_at=1_700_000_000))
        self.assertEqual(s.deployed_at, 1_700_000_000)
        self.assertEqual(s.stage_time(TimelockStage.DST_CANCELLATION), 1_700_000_101)
        self.assertEqual(s, build_schedule(**DEFAULT_OFFSETS).with_deployed_at(1_700_000_000))

        with self.assertRaises(ValidationError):
            schedule_from_mapping(dict(DEFAULT_OFFSETS, deployed_at=2**32))
        with self.assertRaises(ValidationError):
            schedule_from_mapping(dict(DEFAULT_OFFSETS, deployed_at="1700000000"))

    def test_accepts_exactly_the_ordered_schedules(self):
        names = list(DEFAULT_OFFSETS)
        values = [10, 20, 30, 40, 50, 60, 70]
        # Ties on each side and across the margin
        candidates = list(itertools.permutations(values))
        candidates += [(10, 20, 30, 40, 5, 15, 30), (10, 10, 30, 40, 5, 15, 25),
                       (10, 20, 30, 40, 5, 15, 15), (10, 20, 30, 30, 5, 15, 25)]

        accepted = 0
        for combo in candidates:
            o = dict(zip(names, combo))
            ordered = (
                o["src_withdrawal"] < o["src_public_withdrawal"]
                < o["src_cancellation"] < o["src_public_cancellation"]
                and o["dst_withdrawal"] < o["dst_public_withdrawal"] < o["dst_cancellation"]
                and o["dst_cancellation"] < o["src_cancellation"]
            )
            try:
                build_schedule(**o)
                ok = True
            except ValidationError:
                ok = False
            self.assertEqual(ok, ordered, o)
            accepted += ok

        self.assertGreater(accepted, 0)


class TestImmutables(unittest.TestCase):

    def setUp(self):
        self.schedule = build_schedule(**DEFAULT_OFFSETS)
        self.hashlock = commit(generate_secret())
        self.src = build(
            order_hash=b"\x07" * 32,
            hashlock=self.hashlock,
            maker=MAKER,
            taker=TAKER,
            token=NATIVE_TOKEN,
            amount=10**13,
            safety_deposit=10**14,
            schedule=self.schedule,
        )

    def test_build_validation(self):
        with self.assertRaises(ValidationError):
            build(b"\x07" * 31, self.hashlock, MAKER, TAKER, NATIVE_TOKEN, 1, 0, self.schedule)
        with self.assertRaises(ValidationError):
            build(b"\x07" * 32, self.hashlock, "", TAKER, NATIVE_TOKEN, 1, 0, self.schedule)
        with self.assertRaises(ValidationError):
            build(b"\x07" * 32, self.hashlock, MAKER, TAKER, NATIVE_TOKEN, 0, 0, self.schedule)
        with self.assertRaises(ValidationError):
            build(b"\x07" * 32, self.hashlock, MAKER, TAKER, NATIVE_TOKEN, 1, -1, self.schedule)
        with self.assertRaises(ValidationError):
            build(b"\x07" * 32, self.hashlock, MAKER, TAKER, NATIVE_TOKEN, 1, 0, DEFAULT_OFFSETS)

    def test_reproject_changes_only_asset_fields(self):
        dst = reproject(self.src, "uosmo", 10, new_safety_deposit=10000,
                        parameters=fee_parameters())
        self.assertEqual(dst.order_hash, self.src.order_hash)
        self.assertEqual(dst.hashlock, self.src.hashlock)
        self.assertEqual(dst.timelocks, self.src.timelocks)
        self.assertEqual(dst.maker, self.src.maker)
        self.assertEqual(dst.taker, self.src.taker)
        self.assertEqual(dst.token, "uosmo")
        self.assertEqual(dst.amount, 10)
        self.assertEqual(dst.safety_deposit, 10000)
        self.assertNotEqual(dst.parameters, self.src.parameters)
        # Source untouched
        self.assertEqual(self.src.token, NATIVE_TOKEN)
        assert_linked(self.src, dst)

    def test_reproject_keeps_deposit_by_default(self):
        dst = reproject(self.src, "uosmo", 10)
        self.assertEqual(dst.safety_deposit, self.src.safety_deposit)

    def test_reproject_rejects_bad_amount(self):
        with self.assertRaises(ValidationError):
            reproject(self.src, "uosmo", 0)

    def test_assert_linked_detects_divergence(self):
        dst = reproject(self.src, "uosmo", 10)
        with self.assertRaises(AddressDerivationMismatch):
            assert_linked(self.src, replace(dst, hashlock=b"\x00" * 32))
        with self.assertRaises(AddressDerivationMismatch):
            assert_linked(self.src, replace(dst, order_hash=b"\x00" * 32))
        other = build_schedule(**dict(DEFAULT_OFFSETS, dst_cancellation=102))
        with self.assertRaises(AddressDerivationMismatch):
            assert_linked(self.src, replace(dst, timelocks=other))

    def test_evm_tuple(self):
        t = self.src.evm_tuple()
        self.assertEqual(t[0], b"\x07" * 32)
        self.assertEqual(t[2], int(MAKER, 16))
        self.assertEqual(t[4], 0)
        self.assertEqual(t[7], self.schedule.pack())

    def test_cosmwasm_msg(self):
        dst = reproject(self.src, "uosmo", 10, parameters=b"\x01\x02",
                        maker="osmo1maker", taker="osmo1taker")
        msg = dst.cosmwasm_msg()
        self.assertEqual(msg["hashlock"], to_hex(self.hashlock))
        self.assertEqual(msg["maker"], "osmo1maker")
        self.assertEqual(msg["amount"], "10")
        self.assertEqual(msg["timelocks"]["dst_cancellation"], 101)
        self.assertEqual(msg["timelocks"]["deployed_at"], 0)
        self.assertEqual(msg["parameters"], [1, 2])
        json.dumps(msg)

    def test_dict_round_trip(self):
        src = replace(self.src, timelocks=self.schedule.with_deployed_at(42),
                      parameters=fee_parameters(protocol_fee_amount=5))
        self.assertEqual(Immutables.from_dict(src.to_dict()), src)

    def test_fee_parameters_is_compact_json(self):
        data = json.loads(fee_parameters(protocol_fee_amount=3, protocol_fee_recipient="osmo1fee"))
        self.assertEqual(data["protocol_fee_amount"], "3")
        self.assertEqual(data["integrator_fee_amount"], "0")
        self.assertEqual(data["protocol_fee_recipient"], "osmo1fee")

    def test_address_to_uint(self):
        self.assertEqual(address_to_uint(NATIVE_TOKEN), 0)
        with self.assertRaises(ValidationError):
            address_to_uint("osmo1maker")

    def test_order_hash(self):
        order = OrderParams(
            salt=b"\x09" * 32, maker=MAKER, receiver=MAKER,
            maker_asset=NATIVE_TOKEN, taker_asset=NATIVE_TOKEN,
            making_amount=10**13, taking_amount=10,
        )
        h = compute_order_hash(order)
        self.assertEqual(len(h), 32)
        self.assertEqual(h, compute_order_hash(order))
        self.assertNotEqual(h, compute_order_hash(replace(order, taking_amount=11)))
        with self.assertRaises(ValidationError):
            compute_order_hash(replace(order, salt=b"\x09"))


if __name__ == "__main__":
    unittest.main()
