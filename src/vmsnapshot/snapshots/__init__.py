"""Snapshot resources. Reconcilers live in :mod:`vmsnapshot.snapshots.controller`."""

from .models import (
    Condition,
    ConditionStatus,
    ConditionType,
    DeletionPolicy,
    SnapshotError,
    VirtualMachineSnapshot,
    VirtualMachineSnapshotContent,
    VolumeBackup,
)

__all__ = [
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "DeletionPolicy",
    "SnapshotError",
    "VirtualMachineSnapshot",
    "VirtualMachineSnapshotContent",
    "VolumeBackup",
]
