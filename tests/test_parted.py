"""Tests for storage/parted.py - parted machine output parsing."""

import pytest

from dualboot_storage.domain.models import FreeSegment
from dualboot_storage.storage.exceptions import PartitionTableReadError
from dualboot_storage.storage.parted import (
    parse_parted_machine_output,
    read_partition_table,
)

from conftest import FakeRunner


FRESH_INSTALL_OUTPUT = """BYT;
/dev/sda:21474836480B:scsi:512:512:gpt:ATA VBOX HARDDISK:;
1:17408B:1048575B:1031168B:free;
1:1048576B:2148532223B:2147483648B:fat32:ARCH_EFI:boot, esp;
2:2148532224B:21474819583B:19326287360B:btrfs:ARCH_ROOT:;
"""


class TestParsePartedMachineOutput:
    """Tests for parse_parted_machine_output()."""

    def test_disk_line(self):
        table = parse_parted_machine_output(FRESH_INSTALL_OUTPUT)

        assert table.device == "/dev/sda"
        assert table.disk_size_bytes == 21474836480
        assert table.logical_sector_size == 512
        assert table.label == "gpt"

    def test_end_bytes_become_exclusive(self):
        table = parse_parted_machine_output(FRESH_INSTALL_OUTPUT)

        efi, root = table.partitions
        assert (efi.start_byte, efi.end_byte) == (1048576, 2148532224)
        assert efi.size_bytes == 2147483648
        assert root.start_byte == efi.end_byte
        assert root.end_byte == 21474819584

    def test_names_and_flags(self):
        table = parse_parted_machine_output(FRESH_INSTALL_OUTPUT)

        efi, root = table.partitions
        assert efi.filesystem == "fat32"
        assert efi.name == "ARCH_EFI"
        assert efi.flags == ("boot", "esp")
        assert root.flags == ()

    def test_free_lines_are_segments(self):
        table = parse_parted_machine_output(FRESH_INSTALL_OUTPUT)

        assert table.free_segments == (FreeSegment(17408, 1048576),)
        assert table.partition_numbers == (1, 2)

    def test_partition_starting_at(self):
        table = parse_parted_machine_output(FRESH_INSTALL_OUTPUT)

        assert table.partition_starting_at(2148532224).number == 2
        assert table.partition_starting_at(12345) is None

    def test_partition_without_filesystem(self):
        output = (
            "BYT;\n/dev/nvme0n1:274877906944B:nvme:512:512:gpt:Samsung SSD 980:;\n"
            "2:105906176B:122683391B:16777216B::Microsoft reserved partition:msftres;\n"
        )
        table = parse_parted_machine_output(output)

        (msr,) = table.partitions
        assert msr.filesystem == ""
        assert msr.name == "Microsoft reserved partition"
        assert msr.flags == ("msftres",)

    def test_missing_byte_header_is_rejected(self):
        with pytest.raises(ValueError, match="BYT"):
            parse_parted_machine_output("CHS;\n/dev/sda:1:scsi:512:512:gpt:x:;\n")

    def test_empty_output_is_rejected(self):
        with pytest.raises(ValueError):
            parse_parted_machine_output("")

    def test_non_byte_values_are_rejected(self):
        with pytest.raises(ValueError):
            parse_parted_machine_output("BYT;\n/dev/sda:20GB:scsi:512:512:gpt:x:;\n")


class TestReadPartitionTable:
    """Tests for read_partition_table()."""

    def test_reads_fake_disk(self, windows_disk):
        runner = FakeRunner(windows_disk)

        table = read_partition_table(runner, "/dev/nvme0n1")

        assert table.partition_numbers == (1, 2, 3, 4)
        assert runner.calls[0] == [
            "parted", "-m", "-s", "/dev/nvme0n1", "unit", "B", "print", "free",
        ]

    def test_read_is_not_destructive(self, windows_disk):
        runner = FakeRunner(windows_disk)

        read_partition_table(runner, "/dev/nvme0n1")

        assert runner.audit_log == []

    def test_unlabelled_disk_raises(self, empty_disk):
        runner = FakeRunner(empty_disk)

        with pytest.raises(PartitionTableReadError) as exc_info:
            read_partition_table(runner, "/dev/vda")
        assert exc_info.value.device == "/dev/vda"

    def test_unknown_label_raises(self, fake_runner, mocker):
        mocker.patch.object(
            fake_runner,
            "_execute",
            return_value=mocker.Mock(
                returncode=0,
                stdout="BYT;\n/dev/sdz:1000B:scsi:512:512:unknown:x:;\n",
                stderr="",
            ),
        )

        with pytest.raises(PartitionTableReadError, match="no partition table"):
            read_partition_table(fake_runner, "/dev/sdz")

    def test_garbage_output_raises(self, fake_runner, mocker):
        mocker.patch.object(
            fake_runner,
            "_execute",
            return_value=mocker.Mock(returncode=0, stdout="garbage", stderr=""),
        )

        with pytest.raises(PartitionTableReadError):
            read_partition_table(fake_runner, "/dev/sdz")
