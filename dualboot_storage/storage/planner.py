"""Partition layout planning.

The planner turns one free segment and a sizing policy into exact byte
offsets for an EFI system partition followed immediately by the root
partition. It never touches the device.

Every boundary is checked against the *segment* it was given, not against
the disk, so a plan can never reach into a neighbouring partition (for
example an existing Windows installation).

Layout:
    [segment.start ........................................ segment.end)
    [EFI: efi_size ][root: root_size or everything that is left ]
"""
from __future__ import annotations

from typing import Iterable

from dualboot_storage.domain.models import (
    AutomaticPolicy,
    CustomPolicy,
    FreeSegment,
    PartitionPlan,
    PlannedPartition,
    SizingPolicy,
)
from dualboot_storage.logging import LoggerFactory

from .exceptions import InsufficientSpaceError
from .parted import DEFAULT_SECTOR_SIZE
from .units import GiB, MiB


log = LoggerFactory.for_planner()

# Smallest EFI system partition accepted for a custom size
MIN_EFI_BYTES = 32 * MiB
# Root space required by the automatic policy on top of its EFI partition
MIN_ROOT_BYTES = 4 * GiB
# Smallest largest-free-segment accepted next to existing partitions
MIN_INSTALL_BYTES = 5 * GiB
# Below this much free space the user is told to delete partitions first
RECOMMENDED_FREE_BYTES = 8 * GiB
# EFI size used when the disk is initialised from scratch
FRESH_DISK_EFI_BYTES = 2 * GiB
PARTITION_ALIGNMENT = 1 * MiB
# Sectors GPT reserves for the primary and backup headers and entry arrays
GPT_HEAD_SECTORS = 34
GPT_TAIL_SECTORS = 33


def _round_down(value: int, multiple: int) -> int:
    return value - (value % multiple)


def _round_up(value: int, multiple: int) -> int:
    remainder = value % multiple
    return value if remainder == 0 else value + multiple - remainder


def gpt_usable_segment(disk_size_bytes: int, sector_size: int = DEFAULT_SECTOR_SIZE) -> FreeSegment:
    """Free range of a disk that carries an empty GPT label."""
    start = GPT_HEAD_SECTORS * sector_size
    end = disk_size_bytes - GPT_TAIL_SECTORS * sector_size
    if end <= start:
        return FreeSegment.empty()
    return FreeSegment(start, end)


def next_partition_indices(existing: Iterable[int], count: int = 2) -> tuple[int, ...]:
    """Lowest unused partition numbers, in the order parted hands them out."""
    used = set(existing)
    indices: list[int] = []
    candidate = 1
    while len(indices) < count:
        if candidate not in used:
            indices.append(candidate)
        candidate += 1
    return tuple(indices)


def plan_partitions(
    segment: FreeSegment,
    policy: SizingPolicy,
    *,
    efi_index: int = 1,
    root_index: int = 2,
    sector_size: int = DEFAULT_SECTOR_SIZE,
) -> PartitionPlan:
    """Compute EFI and root placement inside ``segment``.

    Args:
        segment: Free range to fill, usually the largest one on the disk
        policy: AutomaticPolicy or CustomPolicy
        efi_index: Partition number the EFI partition will get
        root_index: Partition number the root partition will get
        sector_size: Logical sector size; explicit sizes are rounded down to it

    Raises:
        InsufficientSpaceError: If the layout does not fit in the segment
    """
    efi_start = segment.start_byte

    efi_size = policy.efi_size_bytes
    if isinstance(policy, CustomPolicy) and efi_size < MIN_EFI_BYTES:
        raise InsufficientSpaceError("EFI partition (minimum size)", MIN_EFI_BYTES, efi_size)
    efi_size = _round_down(efi_size, sector_size)

    efi_end = efi_start + efi_size
    if efi_end > segment.end_byte:
        raise InsufficientSpaceError("EFI partition", efi_size, segment.size_bytes)

    root_start = efi_end
    if policy.root_size_bytes is None:
        root_end = segment.end_byte
    else:
        root_size = _round_down(policy.root_size_bytes, sector_size)
        root_end = root_start + root_size
        if root_end > segment.end_byte:
            raise InsufficientSpaceError(
                "root partition", root_size, segment.end_byte - root_start
            )

    if root_end <= root_start:
        raise InsufficientSpaceError("root partition", sector_size, 0)
    if isinstance(policy, AutomaticPolicy) and root_end - root_start < MIN_ROOT_BYTES:
        raise InsufficientSpaceError(
            "root partition (automatic layout)", MIN_ROOT_BYTES, root_end - root_start
        )

    plan = PartitionPlan(
        efi=PlannedPartition(efi_index, efi_start, efi_end),
        root=PlannedPartition(root_index, root_start, root_end),
        segment=segment,
    )
    plan.validate()
    log.debug(
        f"Planned EFI [{efi_start}, {efi_end}) root [{root_start}, {root_end}) "
        f"in segment [{segment.start_byte}, {segment.end_byte})"
    )
    return plan


def plan_fresh_disk(
    segment: FreeSegment,
    policy: SizingPolicy,
    *,
    sector_size: int = DEFAULT_SECTOR_SIZE,
) -> PartitionPlan:
    """Layout for a disk that was just given an empty GPT label.

    The usable range is aligned to 1 MiB. The automatic policy uses a 2 GiB
    EFI partition here, so a fresh disk ends up with EFI at
    [1 MiB, 2049 MiB) and root from 2049 MiB to the end of the usable area.
    """
    aligned_start = _round_up(segment.start_byte, PARTITION_ALIGNMENT)
    if aligned_start >= segment.end_byte:
        raise InsufficientSpaceError("aligned partition area", PARTITION_ALIGNMENT, segment.size_bytes)
    aligned = FreeSegment(aligned_start, segment.end_byte)

    if isinstance(policy, AutomaticPolicy):
        if aligned.size_bytes < FRESH_DISK_EFI_BYTES + MIN_ROOT_BYTES:
            raise InsufficientSpaceError(
                "fresh disk layout", FRESH_DISK_EFI_BYTES + MIN_ROOT_BYTES, aligned.size_bytes
            )
        policy = CustomPolicy(efi_size_bytes=FRESH_DISK_EFI_BYTES)

    return plan_partitions(
        aligned, policy, efi_index=1, root_index=2, sector_size=sector_size
    )
