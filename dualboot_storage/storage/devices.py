"""Disk topology discovery using lsblk and blkid.

Device Detection:
    Uses lsblk with JSON output (``-J -b``) to enumerate whole-disk block
    devices and their partitions:
    - Device name and path (e.g., sda, /dev/sda)
    - Size in bytes
    - Model and transport (nvme, sata, usb)
    - Partition filesystem type and mountpoint

Foreign OS Detection:
    ``find_foreign_efi()`` mounts every FAT volume on the system read-only,
    looks for another OS's boot directory (``EFI/Microsoft`` by default) and
    returns the first device that has it. The result only changes what the
    user is told; the layout always stays inside free space.

Operations:
    - list_disks(): Whole disks for the selection prompt
    - probe_disk(): One disk with its partitions
    - has_partitions(): Whether the disk already holds any partition
    - ensure_unmounted(): Refuse a disk with mounted partitions
    - find_foreign_efi(): First FAT volume carrying the marker directory

Example:
    >>> from dualboot_storage.storage.command import CommandRunner
    >>> runner = CommandRunner()
    >>> disk = probe_disk(runner, "/dev/nvme0n1")
    >>> print(disk.format_label(), [p.index for p in disk.partitions])
    /dev/nvme0n1 Samsung SSD 980 (931.5GiB) [1, 2, 3, 4]
"""
from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Optional

from dualboot_storage.domain.models import TargetDisk
from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner, command_error_message
from .exceptions import (
    DeviceBusyError,
    DeviceNotFoundError,
    ForeignEfiScanError,
    MountFailedError,
)
from .mount import scratch_mount


log = LoggerFactory.for_probe()

LIST_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,TRAN"
PROBE_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,TRAN,FSTYPE,MOUNTPOINT"
DEFAULT_FOREIGN_EFI_MARKER = "EFI/Microsoft"
# blkid exits with 2 when no device matches the token
BLKID_NO_MATCH = 2


def _lsblk_json(runner: CommandRunner, command: list[str]) -> list[dict]:
    result = runner.run(command, log_output=False)
    data = json.loads(result.stdout)
    return data.get("blockdevices", []) or []


def list_disks(runner: CommandRunner) -> list[TargetDisk]:
    """Whole-disk block devices with model and size, for presentation."""
    try:
        devices = _lsblk_json(runner, ["lsblk", "-J", "-b", "-d", "-o", LIST_COLUMNS])
    except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as error:
        log.error(f"lsblk failed: {error}")
        return []
    disks = [
        TargetDisk.from_lsblk_dict(device)
        for device in devices
        if device.get("type") == "disk"
    ]
    log.debug(f"lsblk found {len(disks)} disks: {', '.join(d.path for d in disks)}")
    return disks


def probe_disk(runner: CommandRunner, disk: str) -> TargetDisk:
    """Read ``disk`` and its partitions.

    Raises:
        DeviceNotFoundError: If lsblk cannot read it or it is not a whole disk
    """
    try:
        devices = _lsblk_json(runner, ["lsblk", "-J", "-b", "-o", PROBE_COLUMNS, disk])
    except (subprocess.CalledProcessError, OSError) as error:
        raise DeviceNotFoundError(disk, command_error_message(error)) from error
    except json.JSONDecodeError as error:
        raise DeviceNotFoundError(disk, f"unreadable lsblk output: {error}") from error

    if not devices:
        raise DeviceNotFoundError(disk)
    device = devices[0]
    if device.get("type") != "disk":
        raise DeviceNotFoundError(disk, f"not a whole disk (type {device.get('type')})")

    target = TargetDisk.from_lsblk_dict(device)
    log.info(
        f"Probed {target.format_label()}: {len(target.partitions)} partition(s)"
    )
    for part in target.partitions:
        log.debug(
            f"  #{part.index} {part.path} {part.fstype or 'unknown'} {part.size_bytes}B"
        )
    return target


def has_partitions(runner: CommandRunner, disk: str) -> bool:
    return probe_disk(runner, disk).has_partitions


def ensure_unmounted(disk: TargetDisk) -> None:
    """The engine needs exclusive access to the disk.

    Raises:
        DeviceBusyError: If any partition of the disk is mounted
    """
    mounted = disk.mounted_partitions
    if mounted:
        details = ", ".join(f"{p.path} on {p.mountpoint}" for p in mounted)
        raise DeviceBusyError(disk.path, f"mounted partitions: {details}")


def _list_fat_volumes(runner: CommandRunner) -> list[str]:
    try:
        result = runner.run(
            ["blkid", "-t", "TYPE=vfat", "-o", "device"], check=False, log_output=False
        )
    except OSError as error:
        raise ForeignEfiScanError(f"blkid unavailable: {error}") from error
    if result.returncode == BLKID_NO_MATCH:
        return []
    if result.returncode != 0:
        raise ForeignEfiScanError(
            f"blkid failed with code {result.returncode}: {(result.stderr or '').strip()}"
        )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _has_marker(root: Path, marker: str) -> bool:
    """Walk ``marker`` below ``root`` matching each component case-insensitively."""
    current = root
    for component in Path(marker).parts:
        try:
            matches = [
                entry for entry in current.iterdir()
                if entry.is_dir() and entry.name.lower() == component.lower()
            ]
        except OSError:
            return False
        if not matches:
            return False
        current = matches[0]
    return True


def find_foreign_efi(
    runner: CommandRunner,
    marker: str = DEFAULT_FOREIGN_EFI_MARKER,
) -> Optional[str]:
    """Return the first FAT volume holding ``marker``, or None.

    Candidates that cannot be mounted are skipped. Scan failures are logged
    and reported as "none found".
    """
    try:
        candidates = _list_fat_volumes(runner)
    except ForeignEfiScanError as error:
        log.warning(f"Foreign EFI scan failed, assuming none: {error}")
        return None

    log.debug(f"Scanning {len(candidates)} FAT volume(s) for {marker}")
    for device in candidates:
        try:
            with scratch_mount(runner, device) as mountpoint:
                if _has_marker(mountpoint, marker):
                    log.info(f"Foreign EFI ({marker}) found on {device}")
                    return device
        except MountFailedError as error:
            log.debug(f"Skipping {device}: {error}")
            continue
    return None
