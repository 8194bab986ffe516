"""
vmsnapshot - point-in-time snapshots of halted virtual machines.

Reconciles VirtualMachineSnapshot requests: locks the source VM, records a
VirtualMachineSnapshotContent with a copy of its spec, and fans out one
storage-layer VolumeSnapshot per claim-backed volume.
"""

__version__ = "0.1.0"
__author__ = "vmsnapshot maintainers"

from vmsnapshot.snapshots.controller import SnapshotController
from vmsnapshot.backends.memory import InMemoryCluster

__all__ = ["SnapshotController", "InMemoryCluster", "__version__"]
