"""Domain model for partition planning and provisioning.

These frozen dataclasses replace the loose global variables (disk path,
device nodes, UUIDs) that would otherwise be shared between stages. Byte
ranges are half-open: ``end_byte`` is the first byte *after* the range.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from dualboot_storage.storage.units import GiB


# ==============================================================================
# Disk Topology
# ==============================================================================


def _partition_number(name: str) -> Optional[int]:
    match = re.search(r"(\d+)$", name or "")
    if not match:
        return None
    return int(match.group(1))


@dataclass(frozen=True)
class PartitionEntry:
    """A partition that already exists on the target disk."""

    index: int  # e.g., 3 for sda3 or nvme0n1p3
    path: str  # e.g., "/dev/sda3"
    part_type: str = "part"
    fstype: str | None = None  # e.g., "ntfs", "vfat"
    size_bytes: int = 0
    mountpoint: str | None = None

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> PartitionEntry:
        """Convert an lsblk child dict to a PartitionEntry.

        Raises:
            KeyError: If the name key is missing
            ValueError: If no partition number can be read from the name
        """
        name = device["name"]
        index = _partition_number(name)
        if index is None:
            raise ValueError(f"Cannot determine partition number of {name}")
        return cls(
            index=index,
            path=device.get("path") or f"/dev/{name}",
            part_type=device.get("type") or "part",
            fstype=device.get("fstype"),
            size_bytes=int(device.get("size") or 0),
            mountpoint=device.get("mountpoint"),
        )


@dataclass(frozen=True)
class TargetDisk:
    """The whole-disk device selected for installation."""

    path: str  # e.g., "/dev/nvme0n1"
    size_bytes: int
    model: str | None = None
    transport: str | None = None  # e.g., "nvme", "sata", "usb"
    partitions: tuple[PartitionEntry, ...] = ()

    @property
    def has_partitions(self) -> bool:
        return bool(self.partitions)

    @property
    def size_gib(self) -> float:
        return self.size_bytes / GiB

    @property
    def mounted_partitions(self) -> tuple[PartitionEntry, ...]:
        return tuple(part for part in self.partitions if part.mountpoint)

    def format_label(self) -> str:
        """Human-readable label, e.g. "/dev/sda Samsung SSD 870 (465.8GiB)"."""
        size_str = f"{self.size_gib:.1f}GiB"
        model = (self.model or "").strip()
        if model:
            return f"{self.path} {model} ({size_str})"
        return f"{self.path} ({size_str})"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> TargetDisk:
        """Convert an lsblk disk dict (with optional children) to a TargetDisk."""
        name = device["name"]
        partitions = tuple(
            PartitionEntry.from_lsblk_dict(child)
            for child in device.get("children", []) or []
            if child.get("type") == "part"
        )
        model = device.get("model")
        if model:
            model = model.strip()
        return cls(
            path=device.get("path") or f"/dev/{name}",
            size_bytes=int(device.get("size") or 0),
            model=model,
            transport=device.get("tran"),
            partitions=partitions,
        )


@dataclass(frozen=True)
class FreeSegment:
    """A contiguous unallocated byte range, derived from the partition table."""

    start_byte: int
    end_byte: int

    def __post_init__(self) -> None:
        if self.start_byte < 0 or self.end_byte < self.start_byte:
            raise ValueError(
                f"Invalid free segment [{self.start_byte}, {self.end_byte})"
            )

    @property
    def size_bytes(self) -> int:
        return self.end_byte - self.start_byte

    @property
    def is_empty(self) -> bool:
        return self.size_bytes == 0

    @classmethod
    def empty(cls) -> FreeSegment:
        return cls(0, 0)


# ==============================================================================
# Sizing Policy
# ==============================================================================

AUTOMATIC_EFI_BYTES = 1 * GiB


@dataclass(frozen=True)
class AutomaticPolicy:
    """Fixed 1 GiB EFI partition, root takes the rest of the segment."""

    @property
    def efi_size_bytes(self) -> int:
        return AUTOMATIC_EFI_BYTES

    @property
    def root_size_bytes(self) -> Optional[int]:
        return None


@dataclass(frozen=True)
class CustomPolicy:
    """User-specified sizes; ``root_size_bytes=None`` uses all remaining space."""

    efi_size_bytes: int
    root_size_bytes: Optional[int] = None


SizingPolicy = Union[AutomaticPolicy, CustomPolicy]


# ==============================================================================
# Partition Plan
# ==============================================================================


@dataclass(frozen=True)
class PlannedPartition:
    index: int
    start_byte: int
    end_byte: int

    @property
    def size_bytes(self) -> int:
        return self.end_byte - self.start_byte


@dataclass(frozen=True)
class PartitionPlan:
    """EFI then root, packed at the start of one free segment.

    Computed once, applied once, then discarded.
    """

    efi: PlannedPartition
    root: PlannedPartition
    segment: FreeSegment

    def validate(self) -> None:
        """Re-check the layout against the segment it was planned in.

        Raises:
            InsufficientSpaceError: If any boundary escapes the segment
        """
        from dualboot_storage.storage.exceptions import InsufficientSpaceError

        seg = self.segment
        if self.efi.start_byte != seg.start_byte:
            raise InsufficientSpaceError(
                "EFI partition start", self.efi.start_byte, seg.start_byte
            )
        if self.efi.end_byte <= self.efi.start_byte or self.efi.end_byte > seg.end_byte:
            raise InsufficientSpaceError(
                "EFI partition", self.efi.size_bytes, seg.size_bytes
            )
        if self.root.start_byte != self.efi.end_byte:
            raise InsufficientSpaceError(
                "root partition start", self.root.start_byte, self.efi.end_byte
            )
        if self.root.end_byte <= self.root.start_byte or self.root.end_byte > seg.end_byte:
            raise InsufficientSpaceError(
                "root partition",
                self.root.size_bytes,
                seg.end_byte - self.root.start_byte,
            )


# ==============================================================================
# Provisioning
# ==============================================================================


@dataclass(frozen=True)
class EncryptionState:
    """An opened LUKS container on the root partition."""

    enabled: bool
    container_name: str
    mapped_device: str  # e.g., "/dev/mapper/root"
    luks_uuid: str | None = None


@dataclass(frozen=True)
class MountEntry:
    """One btrfs subvolume in the target tree."""

    subvolume: str  # e.g., "@home"
    relative_path: str  # "" for the tree root, "home", "var/log"
    options: str  # e.g., "noatime,compress=zstd,subvol=@home"


SUBVOLUMES: tuple[str, ...] = ("@", "@home", "@snapshots", "@log", "@swap")

# Root first so that nested paths exist on the mounted root subvolume.
# @swap is reserved for a later swapfile step and is not mounted here.
SUBVOLUME_MOUNT_PATHS: tuple[tuple[str, str], ...] = (
    ("@", ""),
    ("@home", "home"),
    ("@snapshots", ".snapshots"),
    ("@log", "var/log"),
)


def default_mount_plan(base_options: str = "noatime,compress=zstd") -> tuple[MountEntry, ...]:
    """Mount order for the fixed subvolume layout."""
    entries = []
    for subvolume, relative_path in SUBVOLUME_MOUNT_PATHS:
        options = f"{base_options},subvol={subvolume}" if base_options else f"subvol={subvolume}"
        entries.append(MountEntry(subvolume, relative_path, options))
    return tuple(entries)


@dataclass(frozen=True)
class ProvisionResult:
    """Everything the next installation phase needs from this engine."""

    target_root: str
    efi_device: str
    root_device: str  # raw partition
    filesystem_device: str  # mapped device when encrypted, else root_device
    root_uuid: str | None
    encryption: EncryptionState | None = None
    mounted: tuple[str, ...] = ()
    audit_log: tuple = field(default_factory=tuple)

    @property
    def luks_uuid(self) -> str | None:
        return self.encryption.luks_uuid if self.encryption else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_root": self.target_root,
            "efi_device": self.efi_device,
            "root_device": self.root_device,
            "filesystem_device": self.filesystem_device,
            "root_uuid": self.root_uuid,
            "encrypted": bool(self.encryption and self.encryption.enabled),
            "luks_uuid": self.luks_uuid,
            "container_name": self.encryption.container_name if self.encryption else None,
            "mounted": list(self.mounted),
            "audit_log": [entry.to_dict() for entry in self.audit_log],
        }
