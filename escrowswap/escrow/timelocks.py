"""
Timelock schedule for source/destination escrows.

Offsets are seconds relative to the escrow's deployment instant. The
deployment timestamp (deployed_at) is assigned by the deploying chain.

Ordering invariant (validated before any escrow is deployed):
    src_withdrawal < src_public_withdrawal < src_cancellation < src_public_cancellation
    dst_withdrawal < dst_public_withdrawal < dst_cancellation
    dst_cancellation < src_cancellation

The last rule is the atomicity margin: the destination escrow becomes
cancellable strictly before the source escrow.

EVM packed layout (uint256):
    [deployed_at:32 @224][src_withdrawal:32 @192][src_public_withdrawal:32 @160]
    [src_cancellation:32 @128][src_public_cancellation:32 @96]
    [dst_withdrawal:32 @64][dst_public_withdrawal:32 @32][dst_cancellation:32 @0]
"""

from dataclasses import dataclass, replace, asdict
from enum import Enum
from typing import Dict, Mapping

from ..errors import ValidationError

UINT32_MAX = 2**32 - 1


class TimelockStage(Enum):
    """Timelock stages, in declaration order."""
    SRC_WITHDRAWAL = "src_withdrawal"
    SRC_PUBLIC_WITHDRAWAL = "src_public_withdrawal"
    SRC_CANCELLATION = "src_cancellation"
    SRC_PUBLIC_CANCELLATION = "src_public_cancellation"
    DST_WITHDRAWAL = "dst_withdrawal"
    DST_PUBLIC_WITHDRAWAL = "dst_public_withdrawal"
    DST_CANCELLATION = "dst_cancellation"


# Bit offset of each stage in the packed word
_PACK_SHIFTS = {
    TimelockStage.SRC_WITHDRAWAL: 192,
    TimelockStage.SRC_PUBLIC_WITHDRAWAL: 160,
    TimelockStage.SRC_CANCELLATION: 128,
    TimelockStage.SRC_PUBLIC_CANCELLATION: 96,
    TimelockStage.DST_WITHDRAWAL: 64,
    TimelockStage.DST_PUBLIC_WITHDRAWAL: 32,
    TimelockStage.DST_CANCELLATION: 0,
}
_DEPLOYED_AT_SHIFT = 224


@dataclass(frozen=True)
class TimelockSchedule:
    """Validated relative timelock offsets (seconds)."""
    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_public_withdrawal: int
    dst_cancellation: int
    deployed_at: int = 0

    def offset(self, stage: TimelockStage) -> int:
        return getattr(self, stage.value)

    def stage_time(self, stage: TimelockStage, deployed_at: int = None) -> int:
        """Absolute timestamp of a stage for an escrow deployed at deployed_at."""
        base = self.deployed_at if deployed_at is None else deployed_at
        return base + self.offset(stage)

    def with_deployed_at(self, deployed_at: int) -> "TimelockSchedule":
        if deployed_at < 0 or deployed_at > UINT32_MAX:
            raise ValidationError(f"deployed_at out of range: {deployed_at}")
        return replace(self, deployed_at=deployed_at)

    def offsets(self) -> Dict[str, int]:
        """Relative offsets only (no deployed_at)."""
        data = asdict(self)
        data.pop("deployed_at")
        return data

    def pack(self) -> int:
        """Pack into the EVM uint256 layout."""
        packed = self.deployed_at << _DEPLOYED_AT_SHIFT
        for stage, shift in _PACK_SHIFTS.items():
            packed |= self.offset(stage) << shift
        return packed

    @classmethod
    def unpack(cls, packed: int) -> "TimelockSchedule":
        """Inverse of pack(). Validates the unpacked ordering."""
        if packed < 0 or packed >= 2**256:
            raise ValidationError("Packed timelocks must be a uint256")
        values = {
            stage.value: (packed >> shift) & UINT32_MAX
            for stage, shift in _PACK_SHIFTS.items()
        }
        deployed_at = (packed >> _DEPLOYED_AT_SHIFT) & UINT32_MAX
        return build_schedule(**values).with_deployed_at(deployed_at)


def build_schedule(src_withdrawal: int, src_public_withdrawal: int,
                   src_cancellation: int, src_public_cancellation: int,
                   dst_withdrawal: int, dst_public_withdrawal: int,
                   dst_cancellation: int) -> TimelockSchedule:
    """
    Build a TimelockSchedule, enforcing the ordering invariant.

    Raises:
        ValidationError: non-integer, non-positive or >32-bit offsets,
            broken monotonic chain on either side, or
            dst_cancellation >= src_cancellation
    """
    offsets = {
        "src_withdrawal": src_withdrawal,
        "src_public_withdrawal": src_public_withdrawal,
        "src_cancellation": src_cancellation,
        "src_public_cancellation": src_public_cancellation,
        "dst_withdrawal": dst_withdrawal,
        "dst_public_withdrawal": dst_public_withdrawal,
        "dst_cancellation": dst_cancellation,
    }

    for name, value in offsets.items():
        # bool is an int subclass; reject it explicitly
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError(f"Timelock {name} must be an integer, got {value!r}")
        if value <= 0:
            raise ValidationError(f"Timelock {name} must be positive, got {value}")
        if value > UINT32_MAX:
            raise ValidationError(f"Timelock {name} exceeds 32 bits: {value}")

    if not (src_withdrawal < src_public_withdrawal < src_cancellation < src_public_cancellation):
        raise ValidationError(
            f"Source timelocks out of order: "
            f"withdrawal={src_withdrawal}, public_withdrawal={src_public_withdrawal}, "
            f"cancellation={src_cancellation}, public_cancellation={src_public_cancellation} "
            f"(must be strictly increasing)"
        )

    if not (dst_withdrawal < dst_public_withdrawal < dst_cancellation):
        raise ValidationError(
            f"Destination timelocks out of order: "
            f"withdrawal={dst_withdrawal}, public_withdrawal={dst_public_withdrawal}, "
            f"cancellation={dst_cancellation} (must be strictly increasing)"
        )

    if not dst_cancellation < src_cancellation:
        raise ValidationError(
            f"Cross-chain margin violated: dst_cancellation={dst_cancellation}s "
            f"must be < src_cancellation={src_cancellation}s"
        )

    return TimelockSchedule(**offsets)


def schedule_from_mapping(offsets: Mapping[str, int]) -> TimelockSchedule:
    """
    Build a schedule from a {stage_name: seconds} mapping.

    An optional deployed_at entry (as in Immutables.to_dict) is applied with
    with_deployed_at.
    """
    expected = {stage.value for stage in TimelockStage}
    missing = expected - set(offsets)
    unknown = set(offsets) - expected - {"deployed_at"}
    if missing:
        raise ValidationError(f"Missing timelock offsets: {sorted(missing)}")
    if unknown:
        raise ValidationError(f"Unknown timelock offsets: {sorted(unknown)}")
    schedule = build_schedule(**{name: offsets[name] for name in expected})
    deployed_at = offsets.get("deployed_at")
    if deployed_at is None:
        return schedule
    if not isinstance(deployed_at, int) or isinstance(deployed_at, bool):
        raise ValidationError(f"deployed_at must be an integer, got {deployed_at!r}")
    return schedule.with_deployed_at(deployed_at)
