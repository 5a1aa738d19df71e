"""Free-space discovery on the target disk's current partition table.

Free segments are never cached: they are re-read from parted every time, so
a call made right after a partition was created already excludes it.
"""
from __future__ import annotations

from typing import Iterable

from dualboot_storage.domain.models import FreeSegment
from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner
from .parted import read_partition_table
from .units import format_bytes


log = LoggerFactory.for_planner()


def select_largest_segment(segments: Iterable[FreeSegment]) -> FreeSegment:
    """Pick the largest segment; ties go to the lowest start offset.

    Returns ``FreeSegment.empty()`` when there is no free space at all.
    """
    ordered = sorted(segments, key=lambda seg: (-seg.size_bytes, seg.start_byte))
    if not ordered or ordered[0].is_empty:
        return FreeSegment.empty()
    return ordered[0]


def list_free_segments(runner: CommandRunner, disk: str) -> list[FreeSegment]:
    return list(read_partition_table(runner, disk).free_segments)


def largest_free_segment(runner: CommandRunner, disk: str) -> FreeSegment:
    """Largest contiguous unallocated range on ``disk``.

    Raises:
        PartitionTableReadError: If the partition table cannot be read
    """
    segment = select_largest_segment(list_free_segments(runner, disk))
    if segment.is_empty:
        log.info(f"No free space on {disk}")
    else:
        log.info(
            f"Largest free segment on {disk}: {format_bytes(segment.size_bytes)} "
            f"[{segment.start_byte}, {segment.end_byte})"
        )
    return segment
