"""LUKS2 container handling with cryptsetup.

The passphrase is always handed to cryptsetup on stdin (``--key-file -`` or
the trailing ``-`` of luksFormat). It never appears in argv, in the logs or
in the audit trail.
"""
from __future__ import annotations

import subprocess
from typing import Callable

from dualboot_storage.logging import LoggerFactory

from .command import CommandRunner, command_error_message
from .exceptions import (
    EncryptionError,
    EncryptionFormatError,
    EncryptionOpenError,
    PassphraseMismatchError,
)


log = LoggerFactory.for_provision(job_id="encryption")

MAPPER_DIR = "/dev/mapper"
DEFAULT_CONTAINER_NAME = "root"


def mapped_device(container_name: str) -> str:
    return f"{MAPPER_DIR}/{container_name}"


def prompt_passphrase(ask: Callable[[str], str], max_attempts: int = 3) -> str:
    """Ask for a passphrase twice until both entries match.

    Args:
        ask: Prompt function, e.g. ``getpass.getpass``
        max_attempts: Number of entry/confirmation rounds allowed

    Raises:
        PassphraseMismatchError: If no round produced a matching, non-empty pair
    """
    for attempt in range(1, max_attempts + 1):
        first = ask("Enter LUKS passphrase: ")
        if not first:
            log.warning(f"Empty passphrase (attempt {attempt}/{max_attempts})")
            continue
        second = ask("Confirm LUKS passphrase: ")
        if first == second:
            return first
        log.warning(f"Passphrases do not match (attempt {attempt}/{max_attempts})")
    raise PassphraseMismatchError(max_attempts)


def format_container(runner: CommandRunner, device: str, passphrase: str) -> None:
    """Create a LUKS2 header on ``device``. Destroys its contents.

    Raises:
        EncryptionFormatError: If luksFormat fails
    """
    if not passphrase:
        raise EncryptionFormatError("Refusing to format with an empty passphrase", device)
    log.warning(f"Formatting {device} as LUKS2")
    try:
        runner.run(
            [
                "cryptsetup",
                "luksFormat",
                "--type",
                "luks2",
                "--batch-mode",
                "--force-password",
                device,
                "-",
            ],
            input_text=passphrase,
            destructive=True,
        )
    except (subprocess.CalledProcessError, OSError) as error:
        raise EncryptionFormatError(
            f"luksFormat failed on {device}: {command_error_message(error)}", device
        ) from error


def open_container(
    runner: CommandRunner,
    device: str,
    passphrase: str,
    container_name: str = DEFAULT_CONTAINER_NAME,
) -> str:
    """Open ``device`` as ``/dev/mapper/<container_name>`` and return that path.

    Raises:
        EncryptionOpenError: If cryptsetup open fails (wrong key, name in use)
    """
    try:
        runner.run(
            ["cryptsetup", "open", "--key-file", "-", device, container_name],
            input_text=passphrase,
            destructive=True,
        )
    except (subprocess.CalledProcessError, OSError) as error:
        raise EncryptionOpenError(
            f"Cannot open {device} as {container_name}: {command_error_message(error)}",
            device,
        ) from error
    mapped = mapped_device(container_name)
    log.info(f"Opened {device} as {mapped}")
    return mapped


def is_container_open(runner: CommandRunner, container_name: str) -> bool:
    try:
        result = runner.run(
            ["cryptsetup", "status", container_name], check=False, log_output=False
        )
    except OSError as error:
        log.debug(f"cryptsetup unavailable: {error}")
        return False
    return result.returncode == 0


def close_container(runner: CommandRunner, container_name: str) -> None:
    """Close the mapping if it is open.

    Raises:
        EncryptionError: If cryptsetup close fails on an open mapping
    """
    if not is_container_open(runner, container_name):
        log.debug(f"Container {container_name} is not open")
        return
    try:
        runner.run(["cryptsetup", "close", container_name], destructive=True)
    except (subprocess.CalledProcessError, OSError) as error:
        raise EncryptionError(
            f"Cannot close {container_name}: {command_error_message(error)}",
            mapped_device(container_name),
        ) from error
    log.info(f"Closed container {container_name}")


def container_uuid(runner: CommandRunner, device: str) -> str | None:
    """UUID of the LUKS header on ``device``, or None if it cannot be read."""
    try:
        result = runner.run(["cryptsetup", "luksUUID", device], log_output=False)
    except (subprocess.CalledProcessError, OSError) as error:
        log.warning(f"Cannot read LUKS UUID of {device}: {command_error_message(error)}")
        return None
    return result.stdout.strip() or None
