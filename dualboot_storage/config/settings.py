"""Runtime settings for the storage engine.

Nothing is persisted. Values come from ``DEFAULT_SETTINGS`` and can be
overridden per run through ``DUALBOOT_STORAGE_<FIELD>`` environment
variables, e.g. ``DUALBOOT_STORAGE_TARGET_ROOT=/target``.

For unattended runs the installer's variables are honoured as well:
``AUTO_DISK`` selects the disk and ``AUTO_LUKS_PASS`` supplies the LUKS
passphrase.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional


ENV_PREFIX = "DUALBOOT_STORAGE_"
AUTO_DISK_ENV = "AUTO_DISK"
AUTO_LUKS_PASS_ENV = "AUTO_LUKS_PASS"

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SETTLE_SECONDS = 3.0
DEFAULT_DEVICE_NODE_TIMEOUT = 5.0
DEFAULT_PASSPHRASE_ATTEMPTS = 3

DEFAULT_SETTINGS: dict[str, Any] = {
    "target_root": "/mnt",
    "container_name": "root",
    "efi_partition_name": "ARCH_EFI",
    "root_partition_name": "ARCH_ROOT",
    "subvolume_options": "noatime,compress=zstd",
    "foreign_efi_marker": "EFI/Microsoft",
    "settle_seconds": DEFAULT_SETTLE_SECONDS,
    "device_node_timeout": DEFAULT_DEVICE_NODE_TIMEOUT,
    "passphrase_attempts": DEFAULT_PASSPHRASE_ATTEMPTS,
}


@dataclass(frozen=True)
class Settings:
    target_root: str = DEFAULT_SETTINGS["target_root"]
    container_name: str = DEFAULT_SETTINGS["container_name"]
    efi_partition_name: str = DEFAULT_SETTINGS["efi_partition_name"]
    root_partition_name: str = DEFAULT_SETTINGS["root_partition_name"]
    subvolume_options: str = DEFAULT_SETTINGS["subvolume_options"]
    foreign_efi_marker: str = DEFAULT_SETTINGS["foreign_efi_marker"]
    settle_seconds: float = DEFAULT_SETTINGS["settle_seconds"]
    device_node_timeout: float = DEFAULT_SETTINGS["device_node_timeout"]
    passphrase_attempts: int = DEFAULT_SETTINGS["passphrase_attempts"]
    auto_disk: Optional[str] = None
    auto_passphrase: Optional[str] = None

    def with_overrides(self, **overrides: Any) -> Settings:
        """Copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError as error:
            raise ValueError(f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}") from error
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError as error:
            raise ValueError(f"{ENV_PREFIX}{name.upper()} must be a number, got {raw!r}") from error
    return raw


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from defaults plus environment overrides.

    Raises:
        ValueError: If a numeric override cannot be parsed
    """
    if environ is None:
        environ = os.environ
    values: dict[str, Any] = {}
    for setting in fields(Settings):
        if setting.name not in DEFAULT_SETTINGS:
            continue
        raw = environ.get(f"{ENV_PREFIX}{setting.name.upper()}")
        if raw is None or raw == "":
            continue
        values[setting.name] = _coerce(setting.name, raw, DEFAULT_SETTINGS[setting.name])

    values["auto_disk"] = environ.get(AUTO_DISK_ENV) or None
    values["auto_passphrase"] = environ.get(AUTO_LUKS_PASS_ENV) or None
    return Settings(**values)
