"""
Pytest configuration and shared fixtures for dualboot-storage tests.

No test runs a real storage tool. ``FakeRunner`` replaces process execution
and simulates the host: parted and lsblk answer from a ``FakeDisk``, and
mount, cryptsetup, mkfs and blkid keep just enough state for the provisioning
and rollback paths to be observable.
"""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from dualboot_storage.config.settings import Settings
from dualboot_storage.storage.command import CommandRunner
from dualboot_storage.storage.paths import partition_path
from dualboot_storage.storage.units import GiB, MiB


# ==============================================================================
# Fake Disk
# ==============================================================================

_PARTED_FS_NAMES = {"vfat": "fat32", "ntfs": "ntfs", "btrfs": "btrfs"}


def _completed(command, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


@dataclass
class FakePartition:
    number: int
    start: int
    end: int  # exclusive
    fstype: Optional[str] = None
    name: str = ""
    flags: List[str] = field(default_factory=list)
    has_foreign_efi: bool = False
    mountpoint: Optional[str] = None

    @property
    def size(self) -> int:
        return self.end - self.start


class FakeDisk:
    """GPT disk state that answers parted and lsblk like the real tools."""

    def __init__(
        self,
        path: str,
        size_bytes: int,
        *,
        label: Optional[str] = "gpt",
        partitions=(),
        sector_size: int = 512,
        model: str = "Fake NVMe SSD",
        transport: str = "nvme",
    ):
        self.path = path
        self.size_bytes = size_bytes
        self.label = label
        self.partitions: List[FakePartition] = list(partitions)
        self.sector_size = sector_size
        self.model = model
        self.transport = transport

    # GPT keeps 34 sectors at the start and 33 at the end
    @property
    def first_usable(self) -> int:
        return 34 * self.sector_size

    @property
    def usable_end(self) -> int:
        return self.size_bytes - 33 * self.sector_size

    def partition(self, number: int) -> Optional[FakePartition]:
        for part in self.partitions:
            if part.number == number:
                return part
        return None

    def partition_by_path(self, path: str) -> Optional[FakePartition]:
        for part in self.partitions:
            if partition_path(self.path, part.number) == path:
                return part
        return None

    def free_ranges(self) -> List[tuple]:
        ranges = []
        cursor = self.first_usable
        for part in sorted(self.partitions, key=lambda p: p.start):
            if part.start > cursor:
                ranges.append((cursor, part.start))
            cursor = max(cursor, part.end)
        if self.usable_end > cursor:
            ranges.append((cursor, self.usable_end))
        return ranges

    # --- parted --------------------------------------------------------------

    def _print_free(self, command):
        header = (
            f"BYT;\n{self.path}:{self.size_bytes}B:scsi:{self.sector_size}:"
            f"{self.sector_size}:{self.label or 'unknown'}:{self.model}:;\n"
        )
        if self.label is None:
            return _completed(
                command, 1, header, f"Error: {self.path}: unrecognised disk label\n"
            )
        entries = [(start, f"1:{start}B:{end - 1}B:{end - start}B:free;") for start, end in self.free_ranges()]
        for part in self.partitions:
            fs = _PARTED_FS_NAMES.get(part.fstype or "", part.fstype or "")
            entries.append(
                (
                    part.start,
                    f"{part.number}:{part.start}B:{part.end - 1}B:{part.size}B:"
                    f"{fs}:{part.name}:{', '.join(part.flags)};",
                )
            )
        lines = [line for _, line in sorted(entries)]
        return _completed(command, 0, header + "\n".join(lines) + "\n")

    def _mkpart(self, command, args):
        if self.label is None:
            return _completed(command, 1, stderr="Error: unrecognised disk label\n")
        part_type, _fs_hint, start_str, end_str = args[1:5]
        start = int(start_str.rstrip("B"))
        end = int(end_str.rstrip("B")) + 1
        if start < self.first_usable or end > self.usable_end or end <= start:
            return _completed(command, 1, stderr="Error: The location is outside of the device\n")
        for part in self.partitions:
            if start < part.end and part.start < end:
                return _completed(
                    command, 1, stderr=f"Error: overlaps partition {part.number}\n"
                )
        used = {part.number for part in self.partitions}
        number = 1
        while number in used:
            number += 1
        # On GPT the mkpart type argument becomes the partition name
        self.partitions.append(FakePartition(number, start, end, name=part_type))
        return _completed(command)

    def handle_parted(self, command):
        device_at = command.index(self.path)
        options, args = command[1:device_at], command[device_at + 1:]
        if "-m" in options and args == ["unit", "B", "print", "free"]:
            return self._print_free(command)
        if args[:2] == ["unit", "B"]:
            args = args[2:]
        operation = args[0]
        if operation == "mklabel":
            self.label = args[1]
            self.partitions = []
            return _completed(command)
        if operation == "mkpart":
            return self._mkpart(command, args)
        part = self.partition(int(args[1]))
        if part is None:
            return _completed(command, 1, stderr="Error: Partition doesn't exist.\n")
        if operation == "set":
            if args[3] == "on" and args[2] not in part.flags:
                part.flags.append(args[2])
            return _completed(command)
        if operation == "name":
            part.name = args[2]
            return _completed(command)
        if operation == "rm":
            self.partitions.remove(part)
            return _completed(command)
        return _completed(command, 1, stderr=f"unsupported parted operation {operation}\n")

    # --- lsblk ---------------------------------------------------------------

    def lsblk_dict(self, children: bool = True) -> Dict:
        device = {
            "name": Path(self.path).name,
            "path": self.path,
            "type": "disk",
            "size": self.size_bytes,
            "model": self.model,
            "tran": self.transport,
            "fstype": None,
            "mountpoint": None,
        }
        if children and self.partitions:
            device["children"] = [
                {
                    "name": Path(partition_path(self.path, part.number)).name,
                    "path": partition_path(self.path, part.number),
                    "type": "part",
                    "size": part.size,
                    "model": None,
                    "tran": None,
                    "fstype": part.fstype,
                    "mountpoint": part.mountpoint,
                }
                for part in sorted(self.partitions, key=lambda p: p.number)
            ]
        return device


# ==============================================================================
# Fake Runner
# ==============================================================================


class FakeRunner(CommandRunner):
    """CommandRunner whose commands never leave the process."""

    def __init__(self, disk: Optional[FakeDisk] = None):
        super().__init__()
        self.disk = disk
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.failures: List[tuple] = []
        self.mounts: List[tuple] = []
        self.luks: Dict[str, str] = {}
        self.open_containers: Dict[str, str] = {}
        self.filesystems: Dict[str, tuple] = {}
        self.subvolumes: List[str] = []
        self._uuid_counter = 0

    # --- test helpers ---------------------------------------------------------

    def fail_on(self, program: str, *tokens: str, returncode: int = 1, stderr: str = "failed"):
        """Make commands of ``program`` containing all ``tokens`` fail."""
        self.failures.append((program, tokens, returncode, stderr))

    def commands(self, program: str) -> List[List[str]]:
        return [cmd for cmd in self.calls if cmd[0] == program]

    def mounted_paths(self) -> List[str]:
        return [mountpoint for _, mountpoint, _ in self.mounts]

    def _new_uuid(self) -> str:
        self._uuid_counter += 1
        return f"{self._uuid_counter:08x}-0000-4000-8000-000000000000"

    # --- simulation -------------------------------------------------------------

    def _execute(self, command, input_text):
        self.calls.append(list(command))
        self.inputs.append(input_text)

        for program, tokens, returncode, stderr in self.failures:
            if command[0] == program and all(token in command for token in tokens):
                return _completed(command, returncode, stderr=stderr)

        handler = getattr(self, "_run_" + command[0].replace(".", "_"), None)
        if handler is not None:
            return handler(command, input_text)
        return _completed(command)

    def _run_parted(self, command, _input):
        if self.disk is None or self.disk.path not in command:
            return _completed(command, 1, stderr="Error: Could not stat device\n")
        return self.disk.handle_parted(command)

    def _run_lsblk(self, command, _input):
        if self.disk is None:
            return _completed(command, 0, json.dumps({"blockdevices": []}))
        if "-d" in command:
            return _completed(
                command, 0, json.dumps({"blockdevices": [self.disk.lsblk_dict(children=False)]})
            )
        if command[-1] != self.disk.path:
            return _completed(command, 32, stderr=f"lsblk: {command[-1]}: not a block device\n")
        return _completed(command, 0, json.dumps({"blockdevices": [self.disk.lsblk_dict()]}))

    def _run_blkid(self, command, _input):
        if "-t" in command:
            devices = []
            if self.disk is not None:
                devices = [
                    partition_path(self.disk.path, part.number)
                    for part in self.disk.partitions
                    if part.fstype == "vfat"
                ]
            if not devices:
                return _completed(command, 2)
            return _completed(command, 0, "\n".join(devices) + "\n")
        device = command[-1]
        if device not in self.filesystems:
            return _completed(command, 2)
        return _completed(command, 0, self.filesystems[device][1] + "\n")

    def _run_mount(self, command, _input):
        options = None
        args = command[1:]
        if args[0] == "-o":
            options, args = args[1], args[2:]
        device, mountpoint = args
        self.mounts.append((device, mountpoint, options))
        part = self.disk.partition_by_path(device) if self.disk else None
        if part is not None and part.has_foreign_efi:
            (Path(mountpoint) / "EFI" / "Microsoft" / "Boot").mkdir(parents=True)
        return _completed(command)

    def _run_umount(self, command, _input):
        mountpoint = command[-1]
        for entry in reversed(self.mounts):
            if entry[1] == mountpoint:
                self.mounts.remove(entry)
                device = entry[0]
                part = self.disk.partition_by_path(device) if self.disk else None
                if part is not None and part.has_foreign_efi:
                    shutil.rmtree(Path(mountpoint) / "EFI")
                return _completed(command)
        return _completed(command, 32, stderr=f"umount: {mountpoint}: not mounted.\n")

    def _run_cryptsetup(self, command, input_text):
        action = command[1]
        if action == "luksFormat":
            device = command[-2]
            self.luks[device] = input_text
            self.filesystems[device] = ("crypto_LUKS", self._new_uuid())
            return _completed(command)
        if action == "open":
            device, name = command[-2], command[-1]
            if self.luks.get(device) != input_text:
                return _completed(command, 2, stderr="No key available with this passphrase.\n")
            if name in self.open_containers:
                return _completed(command, 5, stderr=f"Device {name} already exists.\n")
            self.open_containers[name] = device
            return _completed(command)
        if action == "status":
            return _completed(command, 0 if command[2] in self.open_containers else 4)
        if action == "close":
            if self.open_containers.pop(command[2], None) is None:
                return _completed(command, 4, stderr=f"Device {command[2]} is not active.\n")
            return _completed(command)
        if action == "luksUUID":
            device = command[2]
            if device not in self.luks:
                return _completed(command, 1, stderr="Device is not a valid LUKS device.\n")
            return _completed(command, 0, self.filesystems[device][1] + "\n")
        return _completed(command, 1, stderr=f"unsupported cryptsetup action {action}\n")

    def _run_mkfs_btrfs(self, command, _input):
        self.filesystems[command[-1]] = ("btrfs", self._new_uuid())
        return _completed(command)

    def _run_mkfs_fat(self, command, _input):
        device = command[-1]
        self.filesystems[device] = ("vfat", self._new_uuid()[:9].upper())
        part = self.disk.partition_by_path(device) if self.disk else None
        if part is not None:
            part.fstype = "vfat"
        return _completed(command)

    def _run_btrfs(self, command, _input):
        self.subvolumes.append(command[-1])
        return _completed(command)


# ==============================================================================
# Disk Fixtures
# ==============================================================================


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Runner without a disk; every command succeeds unless told otherwise."""
    return FakeRunner()


@pytest.fixture
def empty_disk() -> FakeDisk:
    """A 20 GiB disk that has never been partitioned."""
    return FakeDisk("/dev/vda", 20 * GiB, label=None, model="QEMU HARDDISK", transport=None)


@pytest.fixture
def windows_disk() -> FakeDisk:
    """
    A 256 GiB NVMe disk with Windows installed and 50 GiB left unallocated
    between the Windows partition and the recovery partition.
    """
    return FakeDisk(
        "/dev/nvme0n1",
        256 * GiB,
        partitions=[
            FakePartition(
                1, 1 * MiB, 101 * MiB, "vfat", "EFI system partition",
                ["boot", "esp"], has_foreign_efi=True,
            ),
            FakePartition(2, 101 * MiB, 117 * MiB, None, "Microsoft reserved partition", ["msftres"]),
            FakePartition(3, 117 * MiB, 210193 * MiB, "ntfs", "Basic data partition", ["msftdata"]),
            FakePartition(4, 261393 * MiB, 262143 * MiB, "ntfs", "", ["hidden", "diag"]),
        ],
        model="Samsung SSD 980",
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a temporary target root and no settling delays."""
    return Settings(
        target_root=str(tmp_path / "mnt"),
        settle_seconds=0,
        device_node_timeout=0,
    )


@pytest.fixture
def no_device_wait(mocker):
    """Partition nodes of a fake disk never appear in /dev."""
    return mocker.patch("dualboot_storage.storage.pipeline.wait_for_device_node")


@pytest.fixture
def proc_mounts(tmp_path) -> Path:
    """Writable stand-in for /proc/mounts."""
    path = tmp_path / "proc_mounts"
    path.write_text("", encoding="utf-8")
    return path
