"""
Escrow descriptors: timelock schedule and immutables.
"""

from .timelocks import TimelockSchedule, TimelockStage, build_schedule, schedule_from_mapping
from .immutables import (
    Immutables, OrderParams, build, reproject, assert_linked,
    compute_order_hash, fee_parameters, NATIVE_TOKEN,
)

__all__ = [
    "TimelockSchedule",
    "TimelockStage",
    "build_schedule",
    "schedule_from_mapping",
    "Immutables",
    "OrderParams",
    "build",
    "reproject",
    "assert_linked",
    "compute_order_hash",
    "fee_parameters",
    "NATIVE_TOKEN",
]
