"""Filesystem creation: btrfs for root, FAT32 for the EFI partition."""
from __future__ import annotations

import subprocess
from typing import Iterable, Optional

from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner, command_error_message
from .exceptions import FormatOperationError


log = LoggerFactory.for_provision(job_id="filesystem")


def _format(runner: CommandRunner, command: list[str], device: str, what: str) -> None:
    log.info(f"Creating {what} on {device}")
    try:
        runner.run(command, destructive=True)
    except (subprocess.CalledProcessError, OSError) as error:
        raise FormatOperationError(
            f"{what} creation failed on {device}: {command_error_message(error)}", device
        ) from error


def make_btrfs(runner: CommandRunner, device: str, label: Optional[str] = None) -> None:
    """Create a btrfs filesystem, overwriting any existing signature.

    Raises:
        FormatOperationError: If mkfs.btrfs fails
    """
    command = ["mkfs.btrfs", "-f"]
    if label:
        command.extend(["-L", label])
    command.append(device)
    _format(runner, command, device, "btrfs filesystem")


def make_fat32(runner: CommandRunner, device: str, label: Optional[str] = None) -> None:
    """Create a FAT32 filesystem for the EFI system partition.

    Raises:
        FormatOperationError: If mkfs.fat fails
    """
    command = ["mkfs.fat", "-F", "32"]
    if label:
        # FAT labels are limited to 11 characters
        command.extend(["-n", label[:11].upper()])
    command.append(device)
    _format(runner, command, device, "FAT32 filesystem")


def create_subvolumes(runner: CommandRunner, top_level: str, names: Iterable[str]) -> list[str]:
    """Create btrfs subvolumes directly below the mounted top level.

    Returns:
        Paths of the created subvolumes

    Raises:
        FormatOperationError: On the first subvolume that cannot be created
    """
    created = []
    for name in names:
        path = f"{top_level.rstrip('/')}/{name}"
        try:
            runner.run(["btrfs", "subvolume", "create", path], destructive=True)
        except (subprocess.CalledProcessError, OSError) as error:
            raise FormatOperationError(
                f"Cannot create subvolume {name}: {command_error_message(error)}", path
            ) from error
        created.append(path)
    log.debug(f"Created subvolumes: {', '.join(created)}")
    return created


def filesystem_uuid(runner: CommandRunner, device: str) -> str | None:
    """Filesystem UUID of ``device`` as reported by blkid, or None."""
    try:
        result = runner.run(
            ["blkid", "-s", "UUID", "-o", "value", device], check=False, log_output=False
        )
    except OSError as error:
        log.warning(f"blkid unavailable: {error}")
        return None
    if result.returncode != 0:
        log.warning(f"blkid found no UUID on {device}")
        return None
    return result.stdout.strip() or None
