"""Custom exceptions for partition planning and provisioning.

This module defines a hierarchy of exceptions for storage operations to provide
more specific error handling and better error messages.

Exception Hierarchy:
    StorageError (base)
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   └── DeviceBusyError
        ├── PlanningError
        │   ├── InsufficientSpaceError
        │   └── InvalidSizeInputError
        ├── PassphraseMismatchError
        ├── PartitionTableError
        │   ├── PartitionTableReadError
        │   └── PartitionTableWriteError
        ├── FormatError
        │   └── FormatOperationError
        ├── MountError
        │   ├── MountFailedError
        │   └── UnmountFailedError
        ├── EncryptionError
        │   ├── EncryptionFormatError
        │   └── EncryptionOpenError
        ├── ForeignEfiScanError
        └── OperationAbortedError

Planning errors are raised before any destructive command runs. Everything
under PartitionTableWriteError, FormatError, MountError and EncryptionError
can happen after the device was modified; the pipeline rolls back and stamps
the failed stage on ``step`` before re-raising.

Usage:
    from dualboot_storage.storage.exceptions import InsufficientSpaceError

    if efi_end > segment.end_byte:
        raise InsufficientSpaceError("EFI partition", efi_size, segment.size_bytes)
"""
from typing import Optional


class StorageError(Exception):
    """Base exception for all storage operations."""

    step: Optional[str] = None


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or is not a whole disk."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device not found: {device_name}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class DeviceBusyError(DeviceError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PlanningError(StorageError):
    """Base exception for validation failures raised before any device change."""


class InsufficientSpaceError(PlanningError):
    """The free segment is too small for the requested layout."""

    def __init__(self, what: str, required_bytes: int, available_bytes: int):
        self.what = what
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Not enough space for {what}: "
            f"requires {required_bytes} bytes, {available_bytes} bytes available"
        )


class InvalidSizeInputError(PlanningError):
    """A size string could not be turned into a positive byte count."""

    def __init__(self, value: str, reason: str = ""):
        self.value = value
        self.reason = reason
        msg = f"Invalid size: {value!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class PassphraseMismatchError(StorageError):
    """Passphrase confirmation did not match within the allowed attempts."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Passphrases did not match after {attempts} attempts")


class PartitionTableError(StorageError):
    """Base exception for partition table operations."""

    def __init__(self, device: str, message: str):
        self.device = device
        super().__init__(f"{device}: {message}")


class PartitionTableReadError(PartitionTableError):
    """The partition table could not be read or parsed."""


class PartitionTableWriteError(PartitionTableError):
    """A partition table mutation failed; the table may be half-written."""


class FormatError(StorageError):
    """Base exception for filesystem creation."""


class FormatOperationError(FormatError):
    """Generic format operation failure."""

    def __init__(self, message: str, device: str = None):
        self.device = device
        super().__init__(message)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class MountFailedError(MountError):
    """Failed to mount a device or subvolume."""

    def __init__(self, device_name: str, mountpoint: str, reason: str = ""):
        self.device_name = device_name
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to mount {device_name} at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount one or more mountpoints."""

    def __init__(self, device_name: str, mountpoints: list[str]):
        self.device_name = device_name
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Failed to unmount {device_name}. " f"Active mountpoints: {mounts_str}"
        )


class EncryptionError(StorageError):
    """Base exception for encryption container operations."""

    def __init__(self, message: str, device: str = None):
        self.device = device
        super().__init__(message)


class EncryptionFormatError(EncryptionError):
    """luksFormat failed on the root partition."""


class EncryptionOpenError(EncryptionError):
    """The encryption container could not be opened."""


class ForeignEfiScanError(StorageError):
    """Scanning FAT volumes for another OS's boot files failed.

    Non-fatal: callers treat it as "no foreign EFI found".
    """


class OperationAbortedError(StorageError):
    """A required confirmation was not given; nothing was modified."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Aborted: {reason}")
