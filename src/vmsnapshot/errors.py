"""
Error taxonomy for the snapshot controller.

Transient infrastructure outcomes (not found, already exists, conflict) are
raised by the object store; reconcilers tolerate the specific ones they
expect and let everything else reach the runner for a backed-off retry.
"""

from typing import Optional


class VMSnapshotError(Exception):
    """Base class for all controller errors."""


class ApiError(VMSnapshotError):
    """An object store call failed."""

    def __init__(self, kind: str, key: str, message: Optional[str] = None):
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind} {key}: {self.reason}")

    reason = "api error"


class NotFoundError(ApiError):
    reason = "not found"


class AlreadyExistsError(ApiError):
    reason = "already exists"


class ConflictError(ApiError):
    """Optimistic concurrency check failed (stale resourceVersion)."""

    reason = "the object has been modified"


class UnknownSourceError(VMSnapshotError):
    """Snapshot references a source kind the controller cannot lock."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"unknown source {kind}/{name}")


class SnapshotClassAmbiguousError(VMSnapshotError):
    """Several VolumeSnapshotClasses match and none (or many) are default."""

    def __init__(self, storage_class: str, matches: int):
        self.storage_class = storage_class
        self.matches = matches
        super().__init__(f"{matches} matching VolumeSnapshotClasses for {storage_class}")


class MissingStorageClassError(VMSnapshotError):
    """A volume snapshot was requested for a claim without a storage class."""

    def __init__(self, namespace: str, claim_name: str):
        self.namespace = namespace
        self.claim_name = claim_name
        super().__init__(
            f"{namespace}/{claim_name} VolumeSnapshot requested but no storage class"
        )


class RunStrategyError(VMSnapshotError):
    """A VirtualMachine's run strategy cannot be determined."""

    def __init__(self, name: str, reason: str = "running and runStrategy are mutually exclusive"):
        self.name = name
        self.reason = reason
        super().__init__(f"{name}: {reason}")
