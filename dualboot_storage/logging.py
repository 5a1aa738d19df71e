from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DUALBOOT_STORAGE_LOG_DIR",
        Path.home() / ".local" / "state" / "dualboot-storage" / "logs",
    )
)

AUDIT_TAG = "audit"
COMMAND_OUTPUT_TAG = "command-output"


def _should_log_command_output(record) -> bool:
    """Raw stdout/stderr dumps from external tools only show at DEBUG or below."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if COMMAND_OUTPUT_TAG in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _is_audit_record(record) -> bool:
    return AUDIT_TAG in record["extra"].get("tags", [])


def _combined_filter(record) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_command_output(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    console: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: failed stages, rollback problems
    - SUCCESS/INFO: stages, plans, destructive actions
    - DEBUG: every external command with its output
    - TRACE: parser internals

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)
    - audit.jsonl: every destructive command issued against a device (30 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/dualboot-storage/logs)
        console: Attach the stderr sink
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    if console:
        logger.add(
            sys.stderr,
            level=console_level,
            enqueue=True,
            backtrace=False,
            diagnose=False,
            filter=_combined_filter,
            colorize=True,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[source]: <10}</cyan> | "
                "<blue>{extra[job_id]: <18}</blue> | "
                "{message}"
            ),
        )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    # SINK 6: Audit trail - destructive commands only
    logger.add(
        log_dir / "audit.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        filter=_is_audit_record,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["partition", "audit"])
        source: Source component (e.g., "probe", "planner")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking pipeline stages with automatic timing.

    Logs stage start, completion, and failure with duration tracking.

    Example:
        with operation_context("partition", disk="/dev/sda") as log:
            log.debug("Creating EFI partition")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_probe() -> Logger:
        """Logger for block device discovery."""
        return logger.bind(source="probe", tags=["probe", "storage"])

    @staticmethod
    def for_planner() -> Logger:
        """Logger for free-space and layout planning."""
        return logger.bind(source="planner", tags=["planner"])

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partition table mutations."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_provision(job_id: str | None = None) -> Logger:
        """Logger for encryption, filesystem and mount operations."""
        if job_id is None:
            job_id = f"provision-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="provision", tags=["provision", "storage"]
        )

    @staticmethod
    def for_cleanup() -> Logger:
        """Logger for rollback and teardown."""
        return logger.bind(source="cleanup", tags=["cleanup", "storage"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and CLI output."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging the engine's key events with
    consistent structure and fields.
    """

    @staticmethod
    def log_destructive_action(
        log: Logger, command: Sequence[str], returncode: int, **extra
    ) -> None:
        """Log a command that modified a block device."""
        log.bind(tags=[AUDIT_TAG, "command"]).info(
            "Destructive action: {}",
            " ".join(command),
            event_type="destructive_action",
            command=list(command),
            returncode=returncode,
            **extra,
        )

    @staticmethod
    def log_partition_plan(log: Logger, disk: str, plan, **extra) -> None:
        """Log a computed partition plan before it is applied."""
        log.info(
            "Partition plan for {}: EFI #{} [{}, {}) root #{} [{}, {})",
            disk,
            plan.efi.index,
            plan.efi.start_byte,
            plan.efi.end_byte,
            plan.root.index,
            plan.root.start_byte,
            plan.root.end_byte,
            event_type="partition_plan",
            disk=disk,
            efi_start=plan.efi.start_byte,
            efi_end=plan.efi.end_byte,
            root_start=plan.root.start_byte,
            root_end=plan.root.end_byte,
            **extra,
        )

    @staticmethod
    def log_mount(log: Logger, action: str, device: str, mountpoint: str, **extra) -> None:
        """Log a mount or unmount of the target tree."""
        log.info(
            f"{action.capitalize()} {device} at {mountpoint}",
            event_type="mount",
            action=action,  # "mounted" or "unmounted"
            device=device,
            mountpoint=mountpoint,
            **extra,
        )
