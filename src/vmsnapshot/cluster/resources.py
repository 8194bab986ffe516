"""
External resource kinds the controller consumes.

These objects are owned by other components (the VM controller, the
storage layer, the scheduler). The controller only reads them, except for
the lock marker and finalizer on VirtualMachines and the VolumeSnapshots it
creates. Specs the controller does not interpret are kept as raw dicts so
that copies taken at lock time are faithful.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from ..errors import RunStrategyError
from .meta import ObjectMeta, format_time, parse_time

DEFAULT_SNAPSHOT_CLASS_ANNOTATION = "snapshot.storage.kubernetes.io/is-default-class"


class RunStrategy(Enum):
    """How the VM controller keeps a VirtualMachine's instance running."""

    ALWAYS = "Always"
    HALTED = "Halted"
    MANUAL = "Manual"
    RERUN_ON_FAILURE = "RerunOnFailure"


class PodPhase(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass
class Resource:
    """Base for all resource kinds: metadata plus wire (de)serialization."""

    KIND: ClassVar[str] = ""
    API_VERSION: ClassVar[str] = "v1"
    # attributes owned by the status subresource
    STATUS_FIELDS: ClassVar[Tuple[str, ...]] = ("status",)

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return self.metadata.key

    def deep_copy(self):
        return copy.deepcopy(self)

    def _envelope(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata.to_dict(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return self._envelope()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls(metadata=ObjectMeta.from_dict(data.get("metadata")))


@dataclass
class VirtualMachineStatus:
    snapshot_in_progress: Optional[str] = None
    # fields owned by the VM controller, carried through untouched
    other: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.other)
        if self.snapshot_in_progress is not None:
            data["snapshotInProgress"] = self.snapshot_in_progress
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VirtualMachineStatus":
        data = dict(data or {})
        marker = data.pop("snapshotInProgress", None)
        return cls(snapshot_in_progress=marker, other=data)


@dataclass
class VirtualMachine(Resource):
    KIND: ClassVar[str] = "VirtualMachine"
    API_VERSION: ClassVar[str] = "kubevirt.io/v1alpha3"

    spec: Dict[str, Any] = field(default_factory=dict)
    status: VirtualMachineStatus = field(default_factory=VirtualMachineStatus)

    def run_strategy(self) -> RunStrategy:
        running = self.spec.get("running")
        strategy = self.spec.get("runStrategy")
        if running is not None and strategy is not None:
            raise RunStrategyError(self.name)
        if running is not None:
            return RunStrategy.ALWAYS if running else RunStrategy.HALTED
        if strategy is not None:
            try:
                return RunStrategy(strategy)
            except ValueError:
                raise RunStrategyError(self.name, f"unknown runStrategy {strategy!r}") from None
        return RunStrategy.HALTED

    def volumes(self) -> List[Dict[str, Any]]:
        template = self.spec.get("template") or {}
        return list((template.get("spec") or {}).get("volumes") or [])

    def claim_names(self) -> Dict[str, str]:
        """Map volume name -> claim name for claim- and data-volume-backed volumes."""
        claims: Dict[str, str] = {}
        for volume in self.volumes():
            if volume.get("persistentVolumeClaim"):
                claim = volume["persistentVolumeClaim"].get("claimName")
            elif volume.get("dataVolume"):
                claim = volume["dataVolume"].get("name")
            else:
                continue
            if claim:
                claims[volume["name"]] = claim
        return claims

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["spec"] = copy.deepcopy(self.spec)
        data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachine":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=VirtualMachineStatus.from_dict(data.get("status")),
        )


@dataclass
class VirtualMachineInstance(Resource):
    """A running VM. Only its existence matters here."""

    KIND: ClassVar[str] = "VirtualMachineInstance"
    STATUS_FIELDS: ClassVar[Tuple[str, ...]] = ()
    API_VERSION: ClassVar[str] = "kubevirt.io/v1alpha3"

    spec: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["spec"] = copy.deepcopy(self.spec)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachineInstance":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=copy.deepcopy(data.get("spec") or {}),
        )


@dataclass
class Pod(Resource):
    KIND: ClassVar[str] = "Pod"
    STATUS_FIELDS: ClassVar[Tuple[str, ...]] = ("phase",)

    spec: Dict[str, Any] = field(default_factory=dict)
    phase: PodPhase = PodPhase.PENDING

    @property
    def active(self) -> bool:
        return self.phase not in (PodPhase.SUCCEEDED, PodPhase.FAILED)

    def claim_names(self) -> List[str]:
        names = []
        for volume in self.spec.get("volumes") or []:
            claim = volume.get("persistentVolumeClaim")
            if claim and claim.get("claimName"):
                names.append(claim["claimName"])
        return names

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["spec"] = copy.deepcopy(self.spec)
        data["status"] = {"phase": self.phase.value}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pod":
        phase = (data.get("status") or {}).get("phase") or PodPhase.PENDING.value
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=copy.deepcopy(data.get("spec") or {}),
            phase=PodPhase(phase),
        )


@dataclass
class PersistentVolumeClaim(Resource):
    KIND: ClassVar[str] = "PersistentVolumeClaim"

    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)

    @property
    def volume_name(self) -> str:
        return self.spec.get("volumeName") or ""

    @property
    def storage_class_name(self) -> Optional[str]:
        return self.spec.get("storageClassName")

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["spec"] = copy.deepcopy(self.spec)
        if self.status:
            data["status"] = copy.deepcopy(self.status)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistentVolumeClaim":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=copy.deepcopy(data.get("status") or {}),
        )


@dataclass
class StorageClass(Resource):
    KIND: ClassVar[str] = "StorageClass"
    STATUS_FIELDS: ClassVar[Tuple[str, ...]] = ()
    API_VERSION: ClassVar[str] = "storage.k8s.io/v1"

    provisioner: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["provisioner"] = self.provisioner
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageClass":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            provisioner=data.get("provisioner", ""),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class VolumeSnapshotClass(Resource):
    KIND: ClassVar[str] = "VolumeSnapshotClass"
    STATUS_FIELDS: ClassVar[Tuple[str, ...]] = ()
    API_VERSION: ClassVar[str] = "snapshot.storage.k8s.io/v1beta1"

    driver: str = ""
    deletion_policy: str = "Delete"

    @property
    def is_default(self) -> bool:
        return DEFAULT_SNAPSHOT_CLASS_ANNOTATION in self.metadata.annotations

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        data["driver"] = self.driver
        data["deletionPolicy"] = self.deletion_policy
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VolumeSnapshotClass":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            driver=data.get("driver", ""),
            deletion_policy=data.get("deletionPolicy", "Delete"),
        )


@dataclass
class VolumeSnapshotError:
    message: Optional[str] = None
    time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "time": format_time(self.time)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["VolumeSnapshotError"]:
        if not data:
            return None
        return cls(message=data.get("message"), time=parse_time(data.get("time")))


@dataclass
class VolumeSnapshotStatus:
    """Status reported by the external snapshotter."""

    ready_to_use: Optional[bool] = None
    creation_time: Optional[datetime] = None
    error: Optional[VolumeSnapshotError] = None
    bound_content_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.ready_to_use is not None:
            data["readyToUse"] = self.ready_to_use
        if self.creation_time is not None:
            data["creationTime"] = format_time(self.creation_time)
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.bound_content_name is not None:
            data["boundVolumeSnapshotContentName"] = self.bound_content_name
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["VolumeSnapshotStatus"]:
        if data is None:
            return None
        return cls(
            ready_to_use=data.get("readyToUse"),
            creation_time=parse_time(data.get("creationTime")),
            error=VolumeSnapshotError.from_dict(data.get("error")),
            bound_content_name=data.get("boundVolumeSnapshotContentName"),
        )


@dataclass
class VolumeSnapshot(Resource):
    KIND: ClassVar[str] = "VolumeSnapshot"
    API_VERSION: ClassVar[str] = "snapshot.storage.k8s.io/v1beta1"

    claim_name: Optional[str] = None
    snapshot_class_name: Optional[str] = None
    status: Optional[VolumeSnapshotStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self._envelope()
        spec: Dict[str, Any] = {"source": {"persistentVolumeClaimName": self.claim_name}}
        if self.snapshot_class_name is not None:
            spec["volumeSnapshotClassName"] = self.snapshot_class_name
        data["spec"] = spec
        if self.status is not None:
            data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VolumeSnapshot":
        spec = data.get("spec") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            claim_name=(spec.get("source") or {}).get("persistentVolumeClaimName"),
            snapshot_class_name=spec.get("volumeSnapshotClassName"),
            status=VolumeSnapshotStatus.from_dict(data.get("status")),
        )
