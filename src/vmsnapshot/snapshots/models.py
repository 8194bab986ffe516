"""
Resource schemas owned by the snapshot controller.

``VirtualMachineSnapshot`` is created by users; its status is written only
by the controller. ``VirtualMachineSnapshotContent`` is generated once per
snapshot and holds the point-in-time copy of the source plus one volume
backup per snapshotted volume.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from ..cluster.meta import ObjectMeta, format_time, parse_time
from ..cluster.resources import Resource

API_GROUP = "snapshot.kubevirt.io"
SNAPSHOT_API_VERSION = f"{API_GROUP}/v1alpha1"


class DeletionPolicy(Enum):
    """What happens to content when its snapshot is deleted."""

    DELETE = "Delete"
    RETAIN = "Retain"


class ConditionType(Enum):
    PROGRESSING = "Progressing"
    READY = "Ready"


class ConditionStatus(Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    type: ConditionType
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    last_probe_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
            "lastProbeTime": format_time(self.last_probe_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=ConditionType(data["type"]),
            status=ConditionStatus(data["status"]),
            reason=data.get("reason") or "",
            message=data.get("message") or "",
            last_transition_time=parse_time(data.get("lastTransitionTime")),
            last_probe_time=parse_time(data.get("lastProbeTime")),
        )


@dataclass
class SnapshotError:
    """Durable failure record on snapshot and content status."""

    message: Optional[str] = None
    time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "time": format_time(self.time)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SnapshotError"]:
        if not data:
            return None
        return cls(message=data.get("message"), time=parse_time(data.get("time")))


@dataclass
class SourceReference:
    """Typed local reference to the object being snapshotted."""

    kind: str
    name: str
    api_group: Optional[str] = "kubevirt.io"

    def to_dict(self) -> Dict[str, Any]:
        return {"apiGroup": self.api_group, "kind": self.kind, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceReference":
        return cls(
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            api_group=data.get("apiGroup"),
        )


@dataclass
class SnapshotSpec:
    source: SourceReference
    deletion_policy: Optional[DeletionPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"source": self.source.to_dict()}
        if self.deletion_policy is not None:
            data["deletionPolicy"] = self.deletion_policy.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotSpec":
        policy = data.get("deletionPolicy")
        return cls(
            source=SourceReference.from_dict(data.get("source") or {}),
            deletion_policy=DeletionPolicy(policy) if policy else None,
        )


@dataclass
class SnapshotStatus:
    source_uid: Optional[str] = None
    content_name: Optional[str] = None
    creation_time: Optional[datetime] = None
    ready_to_use: Optional[bool] = None
    error: Optional[SnapshotError] = None
    conditions: List[Condition] = field(default_factory=list)

    def condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.source_uid is not None:
            data["sourceUID"] = self.source_uid
        if self.content_name is not None:
            data["virtualMachineSnapshotContentName"] = self.content_name
        if self.creation_time is not None:
            data["creationTime"] = format_time(self.creation_time)
        if self.ready_to_use is not None:
            data["readyToUse"] = self.ready_to_use
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.conditions:
            data["conditions"] = [c.to_dict() for c in self.conditions]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SnapshotStatus"]:
        if data is None:
            return None
        return cls(
            source_uid=data.get("sourceUID"),
            content_name=data.get("virtualMachineSnapshotContentName"),
            creation_time=parse_time(data.get("creationTime")),
            ready_to_use=data.get("readyToUse"),
            error=SnapshotError.from_dict(data.get("error")),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass
class VirtualMachineSnapshot(Resource):
    KIND: ClassVar[str] = "VirtualMachineSnapshot"
    API_VERSION: ClassVar[str] = SNAPSHOT_API_VERSION

    spec: SnapshotSpec = field(
        default_factory=lambda: SnapshotSpec(source=SourceReference(kind="", name=""))
    )
    status: Optional[SnapshotStatus] = None

    @property
    def ready(self) -> bool:
        return self.status is not None and bool(self.status.ready_to_use)

    @property
    def error(self) -> Optional[SnapshotError]:
        return self.status.error if self.status is not None else None

    @property
    def progressing(self) -> bool:
        """Neither failed nor ready yet."""
        return self.error is None and not self.ready

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def deletion_policy(self) -> DeletionPolicy:
        return self.spec.deletion_policy or DeletionPolicy.DELETE

    @property
    def content_name(self) -> str:
        """Name of the generated content: recorded in status, else derived from the UID."""
        if self.status is not None and self.status.content_name:
            return self.status.content_name
        return f"vmsnapshot-content-{self.metadata.uid}"

    def volume_snapshot_name(self, volume_name: str) -> str:
        return f"vmsnapshot-{self.metadata.uid}-volume-{volume_name}"

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["spec"] = self.spec.to_dict()
        if self.status is not None:
            data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachineSnapshot":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=SnapshotSpec.from_dict(data.get("spec") or {}),
            status=SnapshotStatus.from_dict(data.get("status")),
        )


@dataclass
class VolumeBackup:
    volume_name: str
    persistent_volume_claim: Dict[str, Any]
    volume_snapshot_name: Optional[str] = None

    @property
    def claim_name(self) -> str:
        return (self.persistent_volume_claim.get("metadata") or {}).get("name", "")

    @property
    def storage_class_name(self) -> Optional[str]:
        return (self.persistent_volume_claim.get("spec") or {}).get("storageClassName")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "volumeName": self.volume_name,
            "persistentVolumeClaim": copy.deepcopy(self.persistent_volume_claim),
        }
        if self.volume_snapshot_name is not None:
            data["volumeSnapshotName"] = self.volume_snapshot_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VolumeBackup":
        return cls(
            volume_name=data["volumeName"],
            persistent_volume_claim=copy.deepcopy(data.get("persistentVolumeClaim") or {}),
            volume_snapshot_name=data.get("volumeSnapshotName"),
        )


@dataclass
class SourceSpec:
    """Point-in-time copy of the source object (status stripped)."""

    virtual_machine: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.virtual_machine is None:
            return {}
        return {"virtualMachine": copy.deepcopy(self.virtual_machine)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SourceSpec":
        data = data or {}
        return cls(virtual_machine=copy.deepcopy(data.get("virtualMachine")))


@dataclass
class ContentSpec:
    snapshot_name: Optional[str] = None
    source: SourceSpec = field(default_factory=SourceSpec)
    volume_backups: List[VolumeBackup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "virtualMachineSnapshotName": self.snapshot_name,
            "source": self.source.to_dict(),
            "volumeBackups": [vb.to_dict() for vb in self.volume_backups],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentSpec":
        return cls(
            snapshot_name=data.get("virtualMachineSnapshotName"),
            source=SourceSpec.from_dict(data.get("source")),
            volume_backups=[VolumeBackup.from_dict(vb) for vb in data.get("volumeBackups") or []],
        )


@dataclass
class VolumeBackupStatus:
    """Per-volume readiness copied from the external VolumeSnapshot."""

    volume_snapshot_name: str
    creation_time: Optional[datetime] = None
    ready_to_use: Optional[bool] = None
    error: Optional[SnapshotError] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"volumeSnapshotName": self.volume_snapshot_name}
        if self.creation_time is not None:
            data["creationTime"] = format_time(self.creation_time)
        if self.ready_to_use is not None:
            data["readyToUse"] = self.ready_to_use
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VolumeBackupStatus":
        return cls(
            volume_snapshot_name=data["volumeSnapshotName"],
            creation_time=parse_time(data.get("creationTime")),
            ready_to_use=data.get("readyToUse"),
            error=SnapshotError.from_dict(data.get("error")),
        )


@dataclass
class ContentStatus:
    creation_time: Optional[datetime] = None
    ready_to_use: Optional[bool] = None
    error: Optional[SnapshotError] = None
    volume_snapshot_status: List[VolumeBackupStatus] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.creation_time is not None:
            data["creationTime"] = format_time(self.creation_time)
        if self.ready_to_use is not None:
            data["readyToUse"] = self.ready_to_use
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.volume_snapshot_status:
            data["volumeSnapshotStatus"] = [s.to_dict() for s in self.volume_snapshot_status]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ContentStatus"]:
        if data is None:
            return None
        return cls(
            creation_time=parse_time(data.get("creationTime")),
            ready_to_use=data.get("readyToUse"),
            error=SnapshotError.from_dict(data.get("error")),
            volume_snapshot_status=[
                VolumeBackupStatus.from_dict(s) for s in data.get("volumeSnapshotStatus") or []
            ],
        )


@dataclass
class VirtualMachineSnapshotContent(Resource):
    KIND: ClassVar[str] = "VirtualMachineSnapshotContent"
    API_VERSION: ClassVar[str] = SNAPSHOT_API_VERSION

    spec: ContentSpec = field(default_factory=ContentSpec)
    status: Optional[ContentStatus] = None

    @property
    def ready(self) -> bool:
        return self.status is not None and bool(self.status.ready_to_use)

    @property
    def failed(self) -> bool:
        return self.status is not None and self.status.error is not None

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["spec"] = self.spec.to_dict()
        if self.status is not None:
            data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachineSnapshotContent":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=ContentSpec.from_dict(data.get("spec") or {}),
            status=ContentStatus.from_dict(data.get("status")),
        )
