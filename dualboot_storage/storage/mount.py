"""Mount handling for the target tree and for short-lived scratch mounts.

Target tree:
    ``MountTree`` mounts devices below the installation root (``/mnt`` by
    default) and remembers the order, so the tree can be torn down in exact
    reverse order: EFI, then nested subvolumes, then the root subvolume.

Scratch mounts:
    ``scratch_mount()`` mounts a device read-only on a fresh temporary
    directory and always unmounts and removes that directory on exit,
    including when the body returns early or raises. They are not
    recorded in the audit trail.

Active mounts are read from /proc/mounts, the same way the device helpers
check whether a mountpoint is still busy.
"""
from __future__ import annotations

import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from dualboot_storage.logging import EventLogger, LoggerFactory

from .command import CommandRunner, command_error_message
from .exceptions import MountFailedError, UnmountFailedError


log = LoggerFactory.for_provision(job_id="mount")

PROC_MOUNTS = Path("/proc/mounts")
SCRATCH_PREFIX = "dualboot-scan-"

PathLike = Union[str, Path]


def _decode_mount_field(value: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    for escaped, plain in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(escaped, plain)
    return value


def active_mountpoints(proc_mounts: Path = PROC_MOUNTS) -> list[str]:
    try:
        with open(proc_mounts, "r", encoding="utf-8") as mounts_file:
            lines = mounts_file.readlines()
    except FileNotFoundError:
        return []
    mountpoints = []
    for line in lines:
        parts = line.split()
        if len(parts) > 1:
            mountpoints.append(_decode_mount_field(parts[1]))
    return mountpoints


def is_mountpoint_active(mountpoint: PathLike, proc_mounts: Path = PROC_MOUNTS) -> bool:
    return str(mountpoint) in active_mountpoints(proc_mounts)


def mounts_under(root: PathLike, proc_mounts: Path = PROC_MOUNTS) -> list[str]:
    """Active mountpoints at or below ``root``, deepest first."""
    root_str = str(root).rstrip("/") or "/"
    prefix = root_str if root_str.endswith("/") else root_str + "/"
    found = [
        mp for mp in active_mountpoints(proc_mounts)
        if mp == root_str or mp.startswith(prefix)
    ]
    return sorted(found, key=lambda mp: (mp.count("/"), len(mp)), reverse=True)


def mount_device(
    runner: CommandRunner,
    device: str,
    mountpoint: PathLike,
    options: Optional[str] = None,
    *,
    destructive: bool = True,
) -> None:
    """Mount ``device`` on an existing directory.

    Raises:
        MountFailedError: If mount exits non-zero
    """
    command = ["mount"]
    if options:
        command.extend(["-o", options])
    command.extend([device, str(mountpoint)])
    try:
        runner.run(command, destructive=destructive)
    except (subprocess.CalledProcessError, OSError) as error:
        raise MountFailedError(device, str(mountpoint), command_error_message(error)) from error


def unmount_path(
    runner: CommandRunner,
    mountpoint: PathLike,
    *,
    attempts: int = 3,
    retry_delay: float = 1.0,
    lazy_fallback: bool = True,
    destructive: bool = True,
) -> bool:
    """Unmount ``mountpoint`` with retries, then a lazy unmount as last resort.

    Returns:
        True if the mountpoint is no longer mounted
    """
    mountpoint = str(mountpoint)
    for attempt in range(1, attempts + 1):
        result = runner.run(["umount", mountpoint], check=False, destructive=destructive)
        if result.returncode == 0:
            return True
        log.debug(f"Unmount attempt {attempt}/{attempts} of {mountpoint} failed")
        if attempt < attempts:
            time.sleep(retry_delay)

    if lazy_fallback:
        log.warning(f"Normal unmount of {mountpoint} failed, attempting lazy unmount")
        result = runner.run(["umount", "-l", mountpoint], check=False, destructive=destructive)
        if result.returncode == 0:
            return True

    log.error(f"Failed to unmount {mountpoint}")
    return False


@contextmanager
def scratch_mount(
    runner: CommandRunner,
    device: str,
    options: str = "ro",
) -> Iterator[Path]:
    """Mount ``device`` on a temporary directory for the duration of the block.

    Raises:
        MountFailedError: If the device cannot be mounted (the temporary
            directory is already removed when this propagates)
    """
    scratch_dir = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX))
    try:
        mount_device(runner, device, scratch_dir, options, destructive=False)
    except MountFailedError:
        scratch_dir.rmdir()
        raise

    try:
        yield scratch_dir
    finally:
        if unmount_path(
            runner, scratch_dir, attempts=1, lazy_fallback=True, destructive=False
        ):
            try:
                scratch_dir.rmdir()
            except OSError as error:
                log.warning(f"Could not remove scratch directory {scratch_dir}: {error}")
        else:
            log.error(f"Scratch mount {scratch_dir} of {device} is still active")


class MountTree:
    """Mounts below an installation root, torn down in reverse order."""

    def __init__(self, runner: CommandRunner, target_root: PathLike):
        self.runner = runner
        self.target_root = Path(target_root)
        self._mounted: list[tuple[str, Path]] = []

    def path_for(self, relative_path: str) -> Path:
        relative_path = relative_path.strip("/")
        if not relative_path:
            return self.target_root
        if ".." in Path(relative_path).parts:
            raise ValueError(f"Refusing to mount outside the target tree: {relative_path}")
        return self.target_root / relative_path

    @property
    def mounted(self) -> list[tuple[str, Path]]:
        return list(self._mounted)

    @property
    def mounted_paths(self) -> tuple[str, ...]:
        return tuple(str(path) for _, path in self._mounted)

    def mount(self, device: str, relative_path: str = "", options: Optional[str] = None) -> Path:
        """Mount ``device`` at ``target_root/relative_path``, creating the directory.

        Raises:
            MountFailedError: If the mount fails
        """
        mountpoint = self.path_for(relative_path)
        mountpoint.mkdir(parents=True, exist_ok=True)
        mount_device(self.runner, device, mountpoint, options)
        self._mounted.append((device, mountpoint))
        EventLogger.log_mount(log, "mounted", device, str(mountpoint), options=options or "")
        return mountpoint

    def unmount_last(self) -> None:
        """Unmount the most recent mount.

        Raises:
            UnmountFailedError: If it stays mounted
        """
        if not self._mounted:
            return
        device, mountpoint = self._mounted[-1]
        if not unmount_path(self.runner, mountpoint, lazy_fallback=False):
            raise UnmountFailedError(device, [str(mountpoint)])
        self._mounted.pop()
        EventLogger.log_mount(log, "unmounted", device, str(mountpoint))

    def unmount_all(self) -> list[str]:
        """Unmount everything in reverse order.

        Returns:
            Mountpoints that could not be unmounted
        """
        failed: list[str] = []
        while self._mounted:
            device, mountpoint = self._mounted.pop()
            if unmount_path(self.runner, mountpoint):
                EventLogger.log_mount(log, "unmounted", device, str(mountpoint))
            else:
                failed.append(str(mountpoint))
        return failed
