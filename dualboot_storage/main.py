import argparse
import getpass
import json
import sys
from pathlib import Path

from dualboot_storage.config.settings import load_settings
from dualboot_storage.domain.models import AutomaticPolicy, CustomPolicy
from dualboot_storage.logging import LoggerFactory, setup_logging
from dualboot_storage.storage.command import CommandRunner
from dualboot_storage.storage.devices import list_disks
from dualboot_storage.storage.encryption import prompt_passphrase
from dualboot_storage.storage.exceptions import StorageError
from dualboot_storage.storage.pipeline import InstallRequest, run_pipeline
from dualboot_storage.storage.units import format_bytes, parse_optional_size, parse_size
from dualboot_storage.__version__ import __version__

EXIT_OK = 0
EXIT_STORAGE_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser():
    parser = argparse.ArgumentParser(
        prog="dualboot-storage",
        description="Prepare free disk space for an encrypted btrfs Linux install next to an existing OS",
    )
    parser.add_argument("disk", nargs="?", help="Target disk, e.g. /dev/nvme0n1 (default: $AUTO_DISK)")
    parser.add_argument("--list-disks", action="store_true", help="List disks and exit")
    parser.add_argument("--encrypt", action="store_true", help="Put the root filesystem in a LUKS2 container")
    parser.add_argument("--efi-size", metavar="SIZE", help="EFI partition size, e.g. 512M (enables custom sizing)")
    parser.add_argument("--root-size", metavar="SIZE", help="Root partition size, e.g. 100G (default: all remaining space)")
    parser.add_argument(
        "--delete",
        metavar="N",
        type=int,
        action="append",
        default=[],
        help="Delete partition number N first (repeatable)",
    )
    parser.add_argument("--no-format-efi", action="store_true", help="Keep the filesystem on the new EFI partition")
    parser.add_argument("--wipe-empty", action="store_true", help="Confirm creating a new GPT label on a disk without partitions")
    parser.add_argument("--target", metavar="PATH", help="Mount root for the new system (default: /mnt)")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", metavar="DIR", help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_policy(efi_size, root_size):
    """Automatic sizing unless either size was given."""
    if not efi_size and not root_size:
        return AutomaticPolicy()
    efi_bytes = parse_size(efi_size) if efi_size else AutomaticPolicy().efi_size_bytes
    return CustomPolicy(efi_size_bytes=efi_bytes, root_size_bytes=parse_optional_size(root_size))


def print_disks(disks):
    if not disks:
        print("No disks found")
        return
    for disk in disks:
        transport = f" [{disk.transport}]" if disk.transport else ""
        print(f"{disk.format_label()}{transport}")


def print_summary(result):
    print()
    print("Storage ready:")
    print(f"  EFI partition:   {result.efi_device} -> {result.target_root}/boot")
    print(f"  Root partition:  {result.root_device}")
    if result.encryption:
        print(f"  LUKS container:  {result.encryption.mapped_device} (UUID {result.luks_uuid or 'unknown'})")
    print(f"  btrfs UUID:      {result.root_uuid or 'unknown'}")
    print(f"  Mounted:         {', '.join(result.mounted)}")
    print()
    print(f"Next: install the base system into {result.target_root} (e.g. pacstrap) and generate fstab.")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=Path(args.log_dir) if args.log_dir else None,
    )
    log = LoggerFactory.for_system()

    try:
        settings = load_settings()
    except ValueError as error:
        parser.error(str(error))
    if args.target:
        settings = settings.with_overrides(target_root=args.target)

    runner = CommandRunner()

    if args.list_disks:
        print_disks(list_disks(runner))
        return EXIT_OK

    disk = args.disk or settings.auto_disk
    if not disk:
        parser.error("no target disk given (pass DISK or set AUTO_DISK)")

    try:
        policy = build_policy(args.efi_size, args.root_size)
        passphrase = None
        if args.encrypt:
            passphrase = settings.auto_passphrase or prompt_passphrase(
                getpass.getpass, settings.passphrase_attempts
            )
        request = InstallRequest(
            disk=disk,
            encrypt=args.encrypt,
            policy=policy,
            passphrase=passphrase,
            format_efi=not args.no_format_efi,
            delete_indices=tuple(args.delete),
            wipe_empty_disk=args.wipe_empty,
        )
        log.info(
            f"Preparing {disk} (encryption {'on' if args.encrypt else 'off'}, "
            f"EFI {format_bytes(policy.efi_size_bytes)})"
        )
        result = run_pipeline(request, runner, settings)
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return EXIT_INTERRUPTED
    except StorageError as error:
        stage = f" [{error.step}]" if error.step else ""
        log.error(f"Failed{stage}: {error}")
        return EXIT_STORAGE_ERROR

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_summary(result)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
