"""Tests for storage/free_space.py - largest free segment discovery."""

from dualboot_storage.domain.models import FreeSegment
from dualboot_storage.storage.free_space import (
    largest_free_segment,
    list_free_segments,
    select_largest_segment,
)
from dualboot_storage.storage.partition import create_partition
from dualboot_storage.storage.units import GiB, MiB

from conftest import FakeRunner


class TestSelectLargestSegment:
    """Tests for select_largest_segment()."""

    def test_picks_largest(self):
        segments = [FreeSegment(0, 10), FreeSegment(100, 300), FreeSegment(400, 450)]
        assert select_largest_segment(segments) == FreeSegment(100, 300)

    def test_tie_goes_to_lowest_start(self):
        segments = [FreeSegment(1000, 2000), FreeSegment(0, 1000), FreeSegment(5000, 6000)]
        assert select_largest_segment(segments) == FreeSegment(0, 1000)

    def test_no_segments_is_empty(self):
        result = select_largest_segment([])
        assert result.is_empty
        assert result.size_bytes == 0

    def test_only_empty_segments_is_empty(self):
        assert select_largest_segment([FreeSegment(5, 5)]).is_empty


class TestLargestFreeSegment:
    """Tests for largest_free_segment() against a fake disk."""

    def test_windows_gap_is_found(self, windows_disk):
        runner = FakeRunner(windows_disk)

        segment = largest_free_segment(runner, "/dev/nvme0n1")

        assert segment == FreeSegment(210193 * MiB, 261393 * MiB)
        assert segment.size_bytes == 50 * GiB

    def test_repeated_calls_agree(self, windows_disk):
        runner = FakeRunner(windows_disk)

        first = largest_free_segment(runner, "/dev/nvme0n1")
        second = largest_free_segment(runner, "/dev/nvme0n1")

        assert first == second

    def test_created_partition_is_excluded(self, windows_disk):
        runner = FakeRunner(windows_disk)
        before = largest_free_segment(runner, "/dev/nvme0n1")

        create_partition(
            runner, "/dev/nvme0n1", "primary", "fat32",
            before.start_byte, before.start_byte + GiB, "ARCH_EFI",
            settle_seconds=0,
        )
        after = largest_free_segment(runner, "/dev/nvme0n1")

        assert after == FreeSegment(before.start_byte + GiB, before.end_byte)

    def test_full_disk_has_no_free_segment(self):
        from conftest import FakeDisk, FakePartition

        disk = FakeDisk("/dev/sdb", 10 * GiB)
        disk.partitions.append(FakePartition(1, disk.first_usable, disk.usable_end, "ext4"))
        runner = FakeRunner(disk)

        assert list_free_segments(runner, "/dev/sdb") == []
        assert largest_free_segment(runner, "/dev/sdb").is_empty
