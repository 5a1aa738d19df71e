"""Tests for storage/provision.py - LUKS2, btrfs subvolumes and mounts."""

import pytest

from dualboot_storage.storage.exceptions import (
    EncryptionOpenError,
    FormatOperationError,
    MountFailedError,
)
from dualboot_storage.storage.provision import Provisioner, ProvisionState


@pytest.fixture
def target(tmp_path):
    return tmp_path / "mnt"


class TestProvisionPlain:
    """Provisioning without encryption."""

    def test_btrfs_on_raw_partition(self, fake_runner, target):
        result = Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5")

        assert ["mkfs.btrfs", "-f", "/dev/sda6"] in fake_runner.calls
        assert fake_runner.commands("cryptsetup") == []
        assert result.filesystem_device == "/dev/sda6"
        assert result.encryption is None
        assert result.luks_uuid is None

    def test_subvolumes_created_on_top_level(self, fake_runner, target):
        Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5")

        assert fake_runner.subvolumes == [
            f"{target}/@",
            f"{target}/@home",
            f"{target}/@snapshots",
            f"{target}/@log",
            f"{target}/@swap",
        ]
        # Top level mounted without options, then released before @ is mounted
        first_mount, first_umount = fake_runner.commands("mount")[0], fake_runner.commands("umount")[0]
        assert first_mount == ["mount", "/dev/sda6", str(target)]
        assert first_umount == ["umount", str(target)]

    def test_mount_layout(self, fake_runner, target):
        result = Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5")

        assert fake_runner.mounts == [
            ("/dev/sda6", str(target), "noatime,compress=zstd,subvol=@"),
            ("/dev/sda6", str(target / "home"), "noatime,compress=zstd,subvol=@home"),
            ("/dev/sda6", str(target / ".snapshots"), "noatime,compress=zstd,subvol=@snapshots"),
            ("/dev/sda6", str(target / "var" / "log"), "noatime,compress=zstd,subvol=@log"),
            ("/dev/sda5", str(target / "boot"), None),
        ]
        assert result.mounted == tuple(mp for _, mp, _ in fake_runner.mounts)

    def test_efi_formatted(self, fake_runner, target):
        Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5")

        assert ["mkfs.fat", "-F", "32", "-n", "EFI", "/dev/sda5"] in fake_runner.calls

    def test_efi_kept(self, fake_runner, target):
        Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5", format_efi=False)

        assert fake_runner.commands("mkfs.fat") == []
        assert ("/dev/sda5", str(target / "boot"), None) in fake_runner.mounts

    def test_root_uuid_and_state(self, fake_runner, target):
        provisioner = Provisioner(fake_runner, target)

        result = provisioner.provision("/dev/sda6", "/dev/sda5")

        assert result.root_uuid == fake_runner.filesystems["/dev/sda6"][1]
        assert provisioner.state is ProvisionState.MOUNTED_EFI

    def test_custom_subvolume_options(self, fake_runner, target):
        Provisioner(fake_runner, target, subvolume_options="noatime").provision("/dev/sda6", "/dev/sda5")

        assert fake_runner.mounts[0][2] == "noatime,subvol=@"


class TestProvisionEncrypted:
    """Provisioning with a LUKS2 container."""

    def test_filesystem_inside_container(self, fake_runner, target):
        result = Provisioner(fake_runner, target).provision(
            "/dev/nvme0n1p6", "/dev/nvme0n1p5", passphrase="pw"
        )

        assert ["mkfs.btrfs", "-f", "/dev/mapper/root"] in fake_runner.calls
        assert result.filesystem_device == "/dev/mapper/root"
        assert result.root_device == "/dev/nvme0n1p6"
        assert result.encryption.mapped_device == "/dev/mapper/root"
        assert result.encryption.enabled

    def test_uuids_come_from_the_right_devices(self, fake_runner, target):
        result = Provisioner(fake_runner, target).provision(
            "/dev/nvme0n1p6", "/dev/nvme0n1p5", passphrase="pw"
        )

        assert result.luks_uuid == fake_runner.filesystems["/dev/nvme0n1p6"][1]
        assert result.root_uuid == fake_runner.filesystems["/dev/mapper/root"][1]
        assert result.root_uuid != result.luks_uuid

    def test_container_stays_open(self, fake_runner, target):
        Provisioner(fake_runner, target, container_name="cryptroot").provision(
            "/dev/sda6", "/dev/sda5", passphrase="pw"
        )

        assert fake_runner.open_containers == {"cryptroot": "/dev/sda6"}

    def test_result_serialises(self, fake_runner, target):
        result = Provisioner(fake_runner, target).provision(
            "/dev/sda6", "/dev/sda5", passphrase="correct-horse"
        )

        data = result.to_dict()

        assert data["encrypted"] is True
        assert data["container_name"] == "root"
        assert data["audit_log"][0]["command"][:2] == ["cryptsetup", "luksFormat"]
        assert "correct-horse" not in str(data)


class TestProvisionRollback:
    """Failures release every mount and close the container."""

    def test_format_failure_closes_container(self, fake_runner, target):
        fake_runner.fail_on("mkfs.btrfs", stderr="ERROR: unable to open /dev/mapper/root")
        provisioner = Provisioner(fake_runner, target)

        with pytest.raises(FormatOperationError):
            provisioner.provision("/dev/sda6", "/dev/sda5", passphrase="pw")

        assert fake_runner.open_containers == {}
        assert ["cryptsetup", "close", "root"] in fake_runner.calls
        assert provisioner.state is ProvisionState.ENCRYPTED_OPEN

    def test_efi_mount_failure_unmounts_subvolumes(self, fake_runner, target):
        fake_runner.fail_on("mount", "/dev/sda5", returncode=32, stderr="wrong fs type")

        with pytest.raises(MountFailedError):
            Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5", passphrase="pw")

        assert fake_runner.mounts == []
        assert fake_runner.open_containers == {}
        unmounted = [cmd[-1] for cmd in fake_runner.commands("umount")]
        assert unmounted[-4:] == [
            str(target / "var" / "log"),
            str(target / ".snapshots"),
            str(target / "home"),
            str(target),
        ]

    def test_open_failure(self, fake_runner, target):
        fake_runner.fail_on("cryptsetup", "open", returncode=5, stderr="Device root already exists.")

        with pytest.raises(EncryptionOpenError):
            Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5", passphrase="pw")

        assert fake_runner.commands("mkfs.btrfs") == []
        assert fake_runner.mounts == []

    def test_foreign_container_is_left_open(self, fake_runner, target):
        fake_runner.open_containers["root"] = "/dev/sdb2"

        with pytest.raises(EncryptionOpenError):
            Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5", passphrase="pw")

        assert fake_runner.open_containers == {"root": "/dev/sdb2"}
        assert not any(cmd[1] == "close" for cmd in fake_runner.commands("cryptsetup"))

    def test_interrupt_rolls_back(self, fake_runner, target, mocker):
        mocker.patch(
            "dualboot_storage.storage.provision.make_fat32", side_effect=KeyboardInterrupt
        )

        with pytest.raises(KeyboardInterrupt):
            Provisioner(fake_runner, target).provision("/dev/sda6", "/dev/sda5")

        assert fake_runner.mounts == []
