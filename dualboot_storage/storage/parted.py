"""Parser for ``parted --machine`` output.

This is the only place that understands parted's text format. Everything
downstream works with ``PartedTable`` and ``FreeSegment``.

Input is ``parted -m -s <disk> unit B print free``::

    BYT;
    /dev/sda:21474836480B:scsi:512:512:gpt:ATA VBOX HARDDISK:;
    1:17408B:1048575B:1031168B:free;
    1:1048576B:2148532223B:2147483648B:fat32:ARCH_EFI:boot, esp;
    2:2148532224B:21474819583B:19326287360B:btrfs:ARCH_ROOT:;

parted reports *inclusive* end bytes. They are converted to exclusive ends
here so that ``size == end - start`` everywhere else.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Optional

from dualboot_storage.domain.models import FreeSegment
from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner, command_error_message
from .exceptions import PartitionTableReadError


log = LoggerFactory.for_planner()

DEFAULT_SECTOR_SIZE = 512


@dataclass(frozen=True)
class PartedPartition:
    number: int
    start_byte: int
    end_byte: int  # exclusive
    filesystem: str = ""
    name: str = ""
    flags: tuple[str, ...] = ()

    @property
    def size_bytes(self) -> int:
        return self.end_byte - self.start_byte


@dataclass(frozen=True)
class PartedTable:
    device: str
    disk_size_bytes: int
    logical_sector_size: int = DEFAULT_SECTOR_SIZE
    label: str = "unknown"
    partitions: tuple[PartedPartition, ...] = ()
    free_segments: tuple[FreeSegment, ...] = field(default_factory=tuple)

    @property
    def partition_numbers(self) -> tuple[int, ...]:
        return tuple(part.number for part in self.partitions)

    def partition_starting_at(self, start_byte: int) -> Optional[PartedPartition]:
        for part in self.partitions:
            if part.start_byte == start_byte:
                return part
        return None


def _parse_bytes(value: str) -> int:
    value = value.strip()
    if not value.endswith("B"):
        raise ValueError(f"Expected a byte value, got {value!r}")
    return int(value[:-1])


def parse_parted_machine_output(text: str) -> PartedTable:
    """Parse ``parted -m unit B print free`` output.

    Raises:
        ValueError: If the output is not in byte units or is malformed
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or lines[0] != "BYT;":
        raise ValueError("parted output is not in byte units (missing 'BYT;' header)")
    if len(lines) < 2:
        raise ValueError("parted output has no disk line")

    disk_fields = lines[1].rstrip(";").split(":")
    if len(disk_fields) < 6:
        raise ValueError(f"Malformed parted disk line: {lines[1]!r}")
    device = disk_fields[0]
    disk_size = _parse_bytes(disk_fields[1])
    try:
        sector_size = int(disk_fields[3])
    except ValueError:
        sector_size = DEFAULT_SECTOR_SIZE
    label = disk_fields[5] or "unknown"

    partitions: list[PartedPartition] = []
    free_segments: list[FreeSegment] = []
    for line in lines[2:]:
        fields = line.rstrip(";").split(":")
        if len(fields) < 5:
            log.trace(f"Skipping unrecognised parted line: {line!r}")
            continue
        start = _parse_bytes(fields[1])
        end = _parse_bytes(fields[2]) + 1
        reported_size = _parse_bytes(fields[3])
        if end - start != reported_size:
            log.warning(
                f"parted size mismatch on {device}: [{start}, {end}) vs {reported_size}B"
            )
        if fields[4] == "free":
            free_segments.append(FreeSegment(start, end))
            continue
        name = ":".join(fields[5:-1]) if len(fields) > 6 else (fields[5] if len(fields) > 5 else "")
        flags_field = fields[-1] if len(fields) > 6 else ""
        flags = tuple(flag.strip() for flag in flags_field.split(",") if flag.strip())
        partitions.append(
            PartedPartition(
                number=int(fields[0]),
                start_byte=start,
                end_byte=end,
                filesystem=fields[4],
                name=name,
                flags=flags,
            )
        )

    return PartedTable(
        device=device,
        disk_size_bytes=disk_size,
        logical_sector_size=sector_size,
        label=label,
        partitions=tuple(partitions),
        free_segments=tuple(free_segments),
    )


def read_partition_table(runner: CommandRunner, disk: str) -> PartedTable:
    """Read the current partition table and free space of ``disk``.

    Raises:
        PartitionTableReadError: If parted fails (including a disk without a
            partition label) or prints something unparseable
    """
    try:
        result = runner.run(
            ["parted", "-m", "-s", disk, "unit", "B", "print", "free"],
            log_output=False,
        )
    except (subprocess.CalledProcessError, OSError) as error:
        raise PartitionTableReadError(disk, command_error_message(error)) from error

    try:
        table = parse_parted_machine_output(result.stdout)
    except ValueError as error:
        raise PartitionTableReadError(disk, str(error)) from error

    if table.label == "unknown":
        raise PartitionTableReadError(disk, "no partition table")
    log.debug(
        f"{disk}: {table.label} label, {len(table.partitions)} partitions, "
        f"{len(table.free_segments)} free segments"
    )
    return table
