"""Rollback of a partially provisioned target.

Rollback undoes what provisioning left behind on the host: mounts below the
target root and the opened encryption container. It does not undo partition
table changes or restore formatted data.

Order:
    1. Tracked mounts, newest first (EFI, nested subvolumes, root subvolume)
    2. Anything still mounted at or below the target root per /proc/mounts,
       deepest first
    3. The encryption container, if it is open

Rollback never raises. Every failure is logged at ERROR level with the
device and mountpoint involved, and ``rollback()`` reports whether the host
ended up clean. Running it twice is harmless.
"""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner
from .encryption import close_container, is_container_open
from .mount import PROC_MOUNTS, MountTree, mounts_under, unmount_path


log = LoggerFactory.for_cleanup()


class RollbackHandler:
    def __init__(
        self,
        runner: CommandRunner,
        target_root: Union[str, Path],
        container_name: Optional[str] = None,
        mount_tree: Optional[MountTree] = None,
        proc_mounts: Path = PROC_MOUNTS,
    ):
        self.runner = runner
        self.target_root = Path(target_root)
        self.container_name = container_name
        self.mount_tree = mount_tree
        self.proc_mounts = proc_mounts

    def _unmount_tracked(self) -> bool:
        if self.mount_tree is None:
            return True
        try:
            failed = self.mount_tree.unmount_all()
        except Exception as error:
            log.error(f"Unmounting tracked mounts below {self.target_root} failed: {error}")
            return False
        for mountpoint in failed:
            log.error(f"Could not unmount {mountpoint}")
        return not failed

    def _sweep_target(self) -> bool:
        clean = True
        try:
            leftovers = mounts_under(self.target_root, self.proc_mounts)
        except OSError as error:
            log.error(f"Cannot read {self.proc_mounts}: {error}")
            return False
        for mountpoint in leftovers:
            log.warning(f"Unmounting leftover mount {mountpoint}")
            try:
                unmounted = unmount_path(self.runner, mountpoint)
            except Exception as error:
                log.error(f"Unmount of {mountpoint} raised: {error}")
                unmounted = False
            if not unmounted:
                log.error(f"Could not unmount {mountpoint}")
                clean = False
        return clean

    def _close_container(self) -> bool:
        if not self.container_name:
            return True
        try:
            if is_container_open(self.runner, self.container_name):
                close_container(self.runner, self.container_name)
        except Exception as error:
            log.error(
                f"Could not close container {self.container_name} "
                f"(/dev/mapper/{self.container_name}): {error}"
            )
            return False
        return True

    def rollback(self) -> bool:
        """Tear everything down. Returns True when nothing is left behind."""
        log.warning(f"Rolling back provisioning of {self.target_root}")
        mounts_clean = self._unmount_tracked()
        sweep_clean = self._sweep_target()
        container_clean = self._close_container()

        clean = mounts_clean and sweep_clean and container_clean
        if clean:
            log.info("Rollback complete")
        else:
            log.error("Rollback incomplete, manual cleanup required")
        return clean


@contextmanager
def rollback_on_failure(handler: RollbackHandler) -> Iterator[RollbackHandler]:
    """Run ``handler.rollback()`` if the block raises, then re-raise."""
    try:
        yield handler
    except (Exception, KeyboardInterrupt):
        handler.rollback()
        raise
