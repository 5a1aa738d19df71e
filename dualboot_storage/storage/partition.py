"""Partition table mutations with parted.

Partitioning:
    - Uses GPT for disks initialised from scratch
    - Places partitions at exact byte offsets (``unit B``, ``-a none``) so the
      planner's boundaries are applied unchanged
    - Reads the table back after every creation to learn the number parted
      assigned, instead of assuming one

Settling:
    After any write the kernel is asked to re-read the table (partprobe),
    buffers are flushed, udev is allowed to settle and a short delay follows.
    Partition device nodes are not guaranteed to exist before that.

Operations:
    - create_label(): New empty partition table
    - create_partition(): One partition, returns its number
    - set_esp_flag(), set_partition_name()
    - delete_partitions(): Highest number first
    - apply_plan(): EFI then root from a PartitionPlan
"""
from __future__ import annotations

import contextlib
import os
import subprocess
import time
from typing import Iterable

from dualboot_storage.domain.models import PartitionPlan
from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner, command_error_message
from .exceptions import (
    DeviceNotFoundError,
    PartitionTableReadError,
    PartitionTableWriteError,
)
from .parted import read_partition_table


log = LoggerFactory.for_partition()

DEFAULT_SETTLE_SECONDS = 3.0


def _parted_write(
    runner: CommandRunner, disk: str, *args: str, options: tuple[str, ...] = ()
) -> None:
    command = ["parted", "-s", *options, disk, *args]
    try:
        runner.run(command, destructive=True)
    except (subprocess.CalledProcessError, OSError) as error:
        raise PartitionTableWriteError(
            disk, f"'{' '.join(args)}' failed: {command_error_message(error)}"
        ) from error


def refresh_partition_table(
    runner: CommandRunner, disk: str, settle_seconds: float = DEFAULT_SETTLE_SECONDS
) -> None:
    """Make the kernel re-read ``disk`` and give udev time to create nodes."""
    for cmd in (
        ["partprobe", disk],
        ["sync"],
        ["udevadm", "settle", "--timeout=10"],
    ):
        with contextlib.suppress(subprocess.CalledProcessError, OSError):
            result = runner.run(cmd, check=False, log_output=False)
            if result.returncode != 0:
                log.warning(f"{cmd[0]} exited with {result.returncode} for {disk}")
    if settle_seconds > 0:
        time.sleep(settle_seconds)


def wait_for_device_node(path: str, timeout: float = 5.0, interval: float = 0.5) -> None:
    """Block until ``path`` exists.

    Raises:
        DeviceNotFoundError: If the node does not appear within ``timeout``
    """
    deadline = time.monotonic() + timeout
    while True:
        if os.path.exists(path):  # noqa: PTH110
            log.debug(f"Partition node found: {path}")
            return
        if time.monotonic() >= deadline:
            break
        time.sleep(interval)
    log.error(f"Partition node {path} did not appear after {timeout}s")
    raise DeviceNotFoundError(path, "partition node did not appear")


def create_label(
    runner: CommandRunner,
    disk: str,
    label: str = "gpt",
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> None:
    """Write a new, empty partition table. Destroys every existing entry."""
    log.warning(f"Creating new {label} partition table on {disk}")
    _parted_write(runner, disk, "mklabel", label)
    refresh_partition_table(runner, disk, settle_seconds)


def set_esp_flag(runner: CommandRunner, disk: str, index: int) -> None:
    _parted_write(runner, disk, "set", str(index), "esp", "on")


def set_partition_name(runner: CommandRunner, disk: str, index: int, name: str) -> None:
    _parted_write(runner, disk, "name", str(index), name)


def create_partition(
    runner: CommandRunner,
    disk: str,
    part_type: str,
    fs_hint: str,
    start_byte: int,
    end_byte: int,
    name: str,
    *,
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> int:
    """Create a partition covering [start_byte, end_byte) and name it.

    Returns:
        The partition number parted assigned

    Raises:
        PartitionTableWriteError: If parted fails or the new partition is not
            found at ``start_byte`` afterwards
    """
    if end_byte <= start_byte:
        raise PartitionTableWriteError(disk, f"empty range [{start_byte}, {end_byte})")

    log.info(f"Creating {fs_hint} partition {name} on {disk}: [{start_byte}, {end_byte})")
    # parted takes an inclusive end byte
    _parted_write(
        runner,
        disk,
        "unit",
        "B",
        "mkpart",
        part_type,
        fs_hint,
        f"{start_byte}B",
        f"{end_byte - 1}B",
        options=("-a", "none"),
    )
    refresh_partition_table(runner, disk, settle_seconds)

    try:
        table = read_partition_table(runner, disk)
    except PartitionTableReadError as error:
        raise PartitionTableWriteError(disk, f"cannot verify new partition: {error}") from error
    created = table.partition_starting_at(start_byte)
    if created is None:
        raise PartitionTableWriteError(
            disk, f"no partition starts at byte {start_byte} after mkpart"
        )
    if created.end_byte != end_byte:
        log.warning(
            f"Partition {created.number} on {disk} ends at {created.end_byte}, "
            f"requested {end_byte}"
        )

    set_partition_name(runner, disk, created.number, name)
    return created.number


def delete_partitions(
    runner: CommandRunner,
    disk: str,
    indices: Iterable[int],
    *,
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> list[int]:
    """Delete partitions, highest number first.

    Returns:
        The numbers that were deleted, in deletion order

    Raises:
        PartitionTableWriteError: On the first failed deletion (the table is
            refreshed before raising)
    """
    ordered = sorted(set(indices), reverse=True)
    deleted: list[int] = []
    if not ordered:
        return deleted

    log.warning(f"Deleting partitions {ordered} on {disk}")
    try:
        for index in ordered:
            if index < 1:
                raise PartitionTableWriteError(disk, f"invalid partition number {index}")
            _parted_write(runner, disk, "rm", str(index))
            deleted.append(index)
    finally:
        refresh_partition_table(runner, disk, settle_seconds)
    return deleted


def apply_plan(
    runner: CommandRunner,
    disk: str,
    plan: PartitionPlan,
    *,
    efi_name: str = "ARCH_EFI",
    root_name: str = "ARCH_ROOT",
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> tuple[int, int]:
    """Create the EFI and root partitions of ``plan``.

    Returns:
        (efi_index, root_index) as read back from the table
    """
    efi_index = create_partition(
        runner,
        disk,
        "primary",
        "fat32",
        plan.efi.start_byte,
        plan.efi.end_byte,
        efi_name,
        settle_seconds=settle_seconds,
    )
    set_esp_flag(runner, disk, efi_index)

    root_index = create_partition(
        runner,
        disk,
        "primary",
        "btrfs",
        plan.root.start_byte,
        plan.root.end_byte,
        root_name,
        settle_seconds=settle_seconds,
    )
    refresh_partition_table(runner, disk, settle_seconds)

    if (efi_index, root_index) != (plan.efi.index, plan.root.index):
        log.warning(
            f"parted numbered the partitions {efi_index}/{root_index}, "
            f"planned {plan.efi.index}/{plan.root.index}"
        )
    log.info(f"Partitions ready on {disk}: EFI #{efi_index}, root #{root_index}")
    return efi_index, root_index
