"""External command execution for privileged storage tools.

Every parted, cryptsetup, mkfs, mount and lsblk invocation goes through a
``CommandRunner`` so that planning and provisioning logic can be exercised
against a fake runner in tests, and so that every destructive command ends up
in a single audit trail.

Commands that change a block device are run with ``destructive=True``. They
are appended to ``CommandRunner.audit_log`` and logged with the ``audit`` tag,
which the audit.jsonl sink picks up. Secrets are only ever passed through
``input_text`` (stdin) and are never logged or recorded.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from dualboot_storage.logging import COMMAND_OUTPUT_TAG, EventLogger, LoggerFactory


log = LoggerFactory.for_command()


@dataclass(frozen=True)
class AuditEntry:
    """One destructive command issued against a device."""

    command: tuple[str, ...]
    returncode: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "command": list(self.command),
            "returncode": self.returncode,
            "timestamp": self.timestamp.isoformat(),
        }


class CommandRunner:
    """Runs external commands and records the destructive ones."""

    def __init__(self) -> None:
        self.audit_log: list[AuditEntry] = []

    def run(
        self,
        command: Sequence[str],
        *,
        input_text: Optional[str] = None,
        check: bool = True,
        destructive: bool = False,
        log_output: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run ``command`` and return the completed process.

        Args:
            command: Argument list, never a shell string
            input_text: Data fed to stdin (passphrases go here)
            check: Raise CalledProcessError on a non-zero exit code
            destructive: Record the command in the audit trail
            log_output: Log stdout/stderr at DEBUG level

        Raises:
            subprocess.CalledProcessError: If check is set and the command fails
            FileNotFoundError: If the executable does not exist
        """
        command = [str(part) for part in command]
        cmd_str = " ".join(command)
        log.debug(f"Running command: {cmd_str}")

        result = self._execute(command, input_text)

        output_log = log.bind(tags=["command", COMMAND_OUTPUT_TAG])
        if result.stdout and (log_output or result.returncode != 0):
            output_log.debug(f"stdout: {result.stdout.strip()}")
        if result.stderr and (log_output or result.returncode != 0):
            output_log.debug(f"stderr: {result.stderr.strip()}")

        if destructive:
            entry = AuditEntry(command=tuple(command), returncode=result.returncode)
            self.audit_log.append(entry)
            EventLogger.log_destructive_action(log, command, result.returncode)

        if result.returncode != 0:
            log.debug(f"Command completed with return code {result.returncode}")
            if check:
                log.error(f"Command failed: {cmd_str}")
                if result.stderr:
                    log.error(f"stderr: {result.stderr.strip()}")
                raise subprocess.CalledProcessError(
                    result.returncode, command, output=result.stdout, stderr=result.stderr
                )
        return result

    def _execute(
        self, command: list[str], input_text: Optional[str]
    ) -> subprocess.CompletedProcess:
        return subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
        )


def command_error_message(error: BaseException) -> str:
    """Best human-readable reason from a failed command."""
    if isinstance(error, subprocess.CalledProcessError):
        stderr = (error.stderr or "").strip()
        stdout = (error.output or "").strip()
        return stderr or stdout or f"exit code {error.returncode}"
    return str(error)
