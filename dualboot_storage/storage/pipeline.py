"""End-to-end storage preparation for one installation run.

Stages, in order:
    probe       Read the disk, refuse it if anything on it is mounted
    scan        Look for another OS's EFI partition (messaging only)
    delete      Remove the partitions the user confirmed, highest first
    plan        Compute EFI and root placement
    partition   Apply the plan to the disk
    resolve     Map partition numbers to device nodes and wait for them
    provision   LUKS2, btrfs subvolumes, mounts below the target root

A disk that already holds partitions is only ever written inside its largest
free segment. A disk with no partitions at all is given a new GPT label,
which needs the explicit ``wipe_empty_disk`` confirmation. Another OS found
on a different disk does not change that choice.

Every input check runs before the first destructive command. A failure in
any stage is stamped with the stage name (``error.step``), rolls back mounts
and the encryption container, and propagates. Nothing is retried.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from dualboot_storage.config.settings import Settings
from dualboot_storage.domain.models import (
    AutomaticPolicy,
    FreeSegment,
    PartitionPlan,
    ProvisionResult,
    SizingPolicy,
    TargetDisk,
)
from dualboot_storage.logging import EventLogger, LoggerFactory, operation_context

from .cleanup import RollbackHandler, rollback_on_failure
from .command import CommandRunner
from .devices import ensure_unmounted, find_foreign_efi, probe_disk
from .encryption import is_container_open, mapped_device
from .exceptions import (
    DeviceBusyError,
    DeviceNotFoundError,
    InsufficientSpaceError,
    OperationAbortedError,
    StorageError,
)
from .free_space import largest_free_segment
from .mount import mounts_under
from .parted import read_partition_table
from .partition import apply_plan, create_label, delete_partitions, wait_for_device_node
from .paths import partition_path
from .planner import (
    MIN_INSTALL_BYTES,
    RECOMMENDED_FREE_BYTES,
    gpt_usable_segment,
    next_partition_indices,
    plan_fresh_disk,
    plan_partitions,
)
from .provision import Provisioner
from .units import format_bytes


log = LoggerFactory.for_system()


class PipelineStage(Enum):
    PROBE = "probe"
    SCAN = "scan"
    DELETE = "delete"
    PLAN = "plan"
    PARTITION = "partition"
    RESOLVE = "resolve"
    PROVISION = "provision"


@dataclass(frozen=True)
class InstallRequest:
    """Everything the user decided before the run starts."""

    disk: str
    encrypt: bool = False
    policy: SizingPolicy = field(default_factory=AutomaticPolicy)
    passphrase: Optional[str] = None
    format_efi: bool = True
    delete_indices: tuple[int, ...] = ()
    wipe_empty_disk: bool = False


@dataclass
class PipelineRun:
    """Mutable progress of one run, used for error reporting."""

    request: InstallRequest
    stage: PipelineStage = PipelineStage.PROBE
    disk: Optional[TargetDisk] = None
    foreign_efi: Optional[str] = None
    plan: Optional[PartitionPlan] = None
    indices: Optional[tuple[int, int]] = None


def _validate_request(
    runner: CommandRunner, request: InstallRequest, settings: Settings
) -> None:
    if request.encrypt:
        if not request.passphrase:
            raise OperationAbortedError("encryption requested without a passphrase")
        if is_container_open(runner, settings.container_name):
            raise DeviceBusyError(
                mapped_device(settings.container_name),
                "an encryption container with this name is already open",
            )
    busy = mounts_under(settings.target_root)
    if busy:
        raise DeviceBusyError(settings.target_root, f"already mounted: {', '.join(busy)}")


def _check_delete_indices(disk: TargetDisk, indices: tuple[int, ...]) -> None:
    existing = {part.index for part in disk.partitions}
    for index in indices:
        if index not in existing:
            raise DeviceNotFoundError(
                partition_path(disk.path, index) if index >= 1 else f"{disk.path}#{index}",
                "not a partition of the target disk",
            )


def _check_free_space(disk: str, segment: FreeSegment) -> None:
    if segment.size_bytes < MIN_INSTALL_BYTES:
        raise InsufficientSpaceError(
            f"installation on {disk}", MIN_INSTALL_BYTES, segment.size_bytes
        )
    if segment.size_bytes < RECOMMENDED_FREE_BYTES:
        log.warning(
            f"Only {format_bytes(segment.size_bytes)} free on {disk}; "
            f"{format_bytes(RECOMMENDED_FREE_BYTES)} or more is recommended. "
            "Delete partitions first to make room."
        )


def _plan_existing(runner: CommandRunner, request: InstallRequest) -> PartitionPlan:
    table = read_partition_table(runner, request.disk)
    segment = largest_free_segment(runner, request.disk)
    _check_free_space(request.disk, segment)
    efi_index, root_index = next_partition_indices(table.partition_numbers)
    return plan_partitions(
        segment,
        request.policy,
        efi_index=efi_index,
        root_index=root_index,
        sector_size=table.logical_sector_size,
    )


def _plan_empty(
    runner: CommandRunner, request: InstallRequest, disk: TargetDisk, settings: Settings
) -> PartitionPlan:
    # Dry run against the expected layout so a disk that is too small is
    # rejected before it is relabelled
    plan_fresh_disk(gpt_usable_segment(disk.size_bytes), request.policy)
    create_label(runner, request.disk, "gpt", settings.settle_seconds)
    table = read_partition_table(runner, request.disk)
    segment = largest_free_segment(runner, request.disk)
    return plan_fresh_disk(segment, request.policy, sector_size=table.logical_sector_size)


def _run_stages(
    run: PipelineRun, runner: CommandRunner, settings: Settings
) -> ProvisionResult:
    request = run.request

    with operation_context(PipelineStage.PROBE.value, disk=request.disk):
        run.disk = probe_disk(runner, request.disk)
        ensure_unmounted(run.disk)
        _check_delete_indices(run.disk, request.delete_indices)

    run.stage = PipelineStage.SCAN
    with operation_context(PipelineStage.SCAN.value):
        run.foreign_efi = find_foreign_efi(runner, settings.foreign_efi_marker)
        if run.foreign_efi:
            on_target = any(part.path == run.foreign_efi for part in run.disk.partitions)
            log.info(
                f"Existing operating system boot files found on {run.foreign_efi}"
                + ("; the new layout will only use free space" if on_target else "")
            )

    if request.delete_indices:
        run.stage = PipelineStage.DELETE
        with operation_context(PipelineStage.DELETE.value, disk=request.disk):
            delete_partitions(
                runner,
                request.disk,
                request.delete_indices,
                settle_seconds=settings.settle_seconds,
            )
            run.disk = probe_disk(runner, request.disk)

    run.stage = PipelineStage.PLAN
    with operation_context(PipelineStage.PLAN.value, disk=request.disk):
        if run.disk.has_partitions:
            run.plan = _plan_existing(runner, request)
        else:
            if not request.wipe_empty_disk:
                raise OperationAbortedError(
                    f"{request.disk} has no partitions; initialising it needs confirmation"
                )
            run.plan = _plan_empty(runner, request, run.disk, settings)
        EventLogger.log_partition_plan(log, request.disk, run.plan)

    run.stage = PipelineStage.PARTITION
    with operation_context(PipelineStage.PARTITION.value, disk=request.disk):
        run.indices = apply_plan(
            runner,
            request.disk,
            run.plan,
            efi_name=settings.efi_partition_name,
            root_name=settings.root_partition_name,
            settle_seconds=settings.settle_seconds,
        )

    run.stage = PipelineStage.RESOLVE
    with operation_context(PipelineStage.RESOLVE.value):
        efi_index, root_index = run.indices
        efi_device = partition_path(request.disk, efi_index)
        root_device = partition_path(request.disk, root_index)
        wait_for_device_node(efi_device, settings.device_node_timeout)
        wait_for_device_node(root_device, settings.device_node_timeout)

    run.stage = PipelineStage.PROVISION
    with operation_context(PipelineStage.PROVISION.value, root=root_device, efi=efi_device):
        provisioner = Provisioner(
            runner,
            settings.target_root,
            container_name=settings.container_name,
            subvolume_options=settings.subvolume_options,
        )
        return provisioner.provision(
            root_device,
            efi_device,
            passphrase=request.passphrase if request.encrypt else None,
            format_efi=request.format_efi,
        )


def run_pipeline(
    request: InstallRequest,
    runner: Optional[CommandRunner] = None,
    settings: Optional[Settings] = None,
) -> ProvisionResult:
    """Prepare ``request.disk`` and mount the new system below the target root.

    Raises:
        StorageError: With ``step`` set to the failed stage name
    """
    runner = runner or CommandRunner()
    settings = settings or Settings()
    _validate_request(runner, request, settings)

    run = PipelineRun(request=request)
    # The provisioner closes the container it opened; this handler only
    # sweeps mounts left below the target root
    handler = RollbackHandler(runner, settings.target_root)
    try:
        with rollback_on_failure(handler):
            result = _run_stages(run, runner, settings)
    except StorageError as error:
        if error.step is None:
            error.step = run.stage.value
        log.error(f"Storage preparation failed during {error.step}: {error}")
        raise
    log.success(f"Storage for {request.disk} is ready at {result.target_root}")
    return result
