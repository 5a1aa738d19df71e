"""Provisioning of the root and EFI partitions.

State progression (encryption states are skipped without a passphrase):

    RAW -> ENCRYPTED_CLOSED -> ENCRYPTED_OPEN -> FILESYSTEM_CREATED
        -> MOUNTED_ROOT -> MOUNTED_SUBVOLUMES -> MOUNTED_EFI

Target tree after a successful run (``/mnt`` by default)::

    /mnt             subvol=@
    /mnt/home        subvol=@home
    /mnt/.snapshots  subvol=@snapshots
    /mnt/var/log     subvol=@log
    /mnt/boot        EFI system partition

``@swap`` is created but not mounted. Any failure rolls the host back
(mounts, then the container) before the error propagates.
"""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional, Union

from dualboot_storage.domain.models import (
    SUBVOLUMES,
    EncryptionState,
    ProvisionResult,
    default_mount_plan,
)
from dualboot_storage.logging import LoggerFactory

from .cleanup import RollbackHandler, rollback_on_failure
from .command import CommandRunner
from .encryption import DEFAULT_CONTAINER_NAME, container_uuid, format_container, open_container
from .filesystem import create_subvolumes, filesystem_uuid, make_btrfs, make_fat32
from .mount import MountTree


EFI_MOUNT_PATH = "boot"
DEFAULT_SUBVOLUME_OPTIONS = "noatime,compress=zstd"


class ProvisionState(Enum):
    RAW = "raw"
    ENCRYPTED_CLOSED = "encrypted_closed"
    ENCRYPTED_OPEN = "encrypted_open"
    FILESYSTEM_CREATED = "filesystem_created"
    MOUNTED_ROOT = "mounted_root"
    MOUNTED_SUBVOLUMES = "mounted_subvolumes"
    MOUNTED_EFI = "mounted_efi"


class Provisioner:
    """Encrypts, formats and mounts one root partition plus its EFI partition."""

    def __init__(
        self,
        runner: CommandRunner,
        target_root: Union[str, Path] = "/mnt",
        *,
        container_name: str = DEFAULT_CONTAINER_NAME,
        subvolume_options: str = DEFAULT_SUBVOLUME_OPTIONS,
        efi_label: Optional[str] = "EFI",
        root_label: Optional[str] = None,
    ):
        self.runner = runner
        self.target_root = Path(target_root)
        self.container_name = container_name
        self.subvolume_options = subvolume_options
        self.efi_label = efi_label
        self.root_label = root_label
        self.state = ProvisionState.RAW
        self.mount_tree = MountTree(runner, self.target_root)
        self.log = LoggerFactory.for_provision()

    def _advance(self, state: ProvisionState) -> None:
        self.log.debug(f"Provisioning state: {self.state.value} -> {state.value}")
        self.state = state

    def _encrypt(
        self, root_device: str, passphrase: str, handler: RollbackHandler
    ) -> EncryptionState:
        format_container(self.runner, root_device, passphrase)
        self._advance(ProvisionState.ENCRYPTED_CLOSED)
        mapped = open_container(self.runner, root_device, passphrase, self.container_name)
        # Only a mapping opened here may be closed on rollback
        handler.container_name = self.container_name
        self._advance(ProvisionState.ENCRYPTED_OPEN)
        return EncryptionState(
            enabled=True,
            container_name=self.container_name,
            mapped_device=mapped,
            luks_uuid=container_uuid(self.runner, root_device),
        )

    def _create_subvolumes(self, fs_device: str) -> None:
        # The top level is only mounted long enough to create the subvolumes
        top_level = self.mount_tree.mount(fs_device)
        create_subvolumes(self.runner, str(top_level), SUBVOLUMES)
        self.mount_tree.unmount_last()

    def _mount_subvolumes(self, fs_device: str) -> None:
        for entry in default_mount_plan(self.subvolume_options):
            self.mount_tree.mount(fs_device, entry.relative_path, entry.options)
            if entry.subvolume == "@":
                self._advance(ProvisionState.MOUNTED_ROOT)
        self._advance(ProvisionState.MOUNTED_SUBVOLUMES)

    def provision(
        self,
        root_device: str,
        efi_device: str,
        *,
        passphrase: Optional[str] = None,
        format_efi: bool = True,
    ) -> ProvisionResult:
        """Run every provisioning step on the given partitions.

        Args:
            root_device: Raw root partition node, e.g. /dev/nvme0n1p5
            efi_device: EFI partition node, e.g. /dev/nvme0n1p4
            passphrase: Enables LUKS2 when given
            format_efi: Create a new FAT32 filesystem on the EFI partition

        Raises:
            EncryptionError, FormatError, MountError: After rollback
        """
        handler = RollbackHandler(
            self.runner,
            self.target_root,
            mount_tree=self.mount_tree,
        )
        encryption = None
        with rollback_on_failure(handler):
            if passphrase:
                encryption = self._encrypt(root_device, passphrase, handler)
                fs_device = encryption.mapped_device
            else:
                fs_device = root_device

            make_btrfs(self.runner, fs_device, self.root_label)
            self._advance(ProvisionState.FILESYSTEM_CREATED)

            self._create_subvolumes(fs_device)
            self._mount_subvolumes(fs_device)

            if format_efi:
                make_fat32(self.runner, efi_device, self.efi_label)
            else:
                self.log.info(f"Keeping existing filesystem on {efi_device}")
            self.mount_tree.mount(efi_device, EFI_MOUNT_PATH)
            self._advance(ProvisionState.MOUNTED_EFI)

            root_uuid = filesystem_uuid(self.runner, fs_device)

        result = ProvisionResult(
            target_root=str(self.target_root),
            efi_device=efi_device,
            root_device=root_device,
            filesystem_device=fs_device,
            root_uuid=root_uuid,
            encryption=encryption,
            mounted=self.mount_tree.mounted_paths,
            audit_log=tuple(self.runner.audit_log),
        )
        self.log.success(
            f"Provisioned {root_device} ({'LUKS2 + ' if encryption else ''}btrfs) "
            f"at {self.target_root}"
        )
        return result
