"""Domain models for partition planning and provisioning.

This package contains the typed records passed between the prober, planner,
mutator and provisioner instead of shared global state.
"""

from __future__ import annotations

from .models import (
    AutomaticPolicy,
    CustomPolicy,
    EncryptionState,
    FreeSegment,
    MountEntry,
    PartitionEntry,
    PartitionPlan,
    PlannedPartition,
    ProvisionResult,
    SizingPolicy,
    TargetDisk,
)


__all__ = [
    "AutomaticPolicy",
    "CustomPolicy",
    "EncryptionState",
    "FreeSegment",
    "MountEntry",
    "PartitionEntry",
    "PartitionPlan",
    "PlannedPartition",
    "ProvisionResult",
    "SizingPolicy",
    "TargetDisk",
]
