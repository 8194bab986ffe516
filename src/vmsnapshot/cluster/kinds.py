"""Registry of the resource kinds the controller reads or writes."""

from enum import Enum
from typing import Optional, Type

from ..snapshots.models import VirtualMachineSnapshot, VirtualMachineSnapshotContent
from .resources import (
    PersistentVolumeClaim,
    Pod,
    Resource,
    StorageClass,
    VirtualMachine,
    VirtualMachineInstance,
    VolumeSnapshot,
    VolumeSnapshotClass,
)


class Kind(Enum):
    """(group, version, plural, namespaced, status subresource, model)."""

    VIRTUAL_MACHINE = ("kubevirt.io", "v1alpha3", "virtualmachines", True, True, VirtualMachine)
    VIRTUAL_MACHINE_INSTANCE = (
        "kubevirt.io", "v1alpha3", "virtualmachineinstances", True, True, VirtualMachineInstance,
    )
    SNAPSHOT = (
        "snapshot.kubevirt.io", "v1alpha1", "virtualmachinesnapshots", True, False,
        VirtualMachineSnapshot,
    )
    SNAPSHOT_CONTENT = (
        "snapshot.kubevirt.io", "v1alpha1", "virtualmachinesnapshotcontents", True, False,
        VirtualMachineSnapshotContent,
    )
    VOLUME_SNAPSHOT = (
        "snapshot.storage.k8s.io", "v1beta1", "volumesnapshots", True, True, VolumeSnapshot,
    )
    VOLUME_SNAPSHOT_CLASS = (
        "snapshot.storage.k8s.io", "v1beta1", "volumesnapshotclasses", False, False,
        VolumeSnapshotClass,
    )
    POD = ("", "v1", "pods", True, True, Pod)
    PERSISTENT_VOLUME_CLAIM = ("", "v1", "persistentvolumeclaims", True, True, PersistentVolumeClaim)
    STORAGE_CLASS = ("storage.k8s.io", "v1", "storageclasses", False, False, StorageClass)

    def __init__(self, group, version, plural, namespaced, status_subresource, model):
        self.group = group
        self.version = version
        self.plural = plural
        self.namespaced = namespaced
        self.status_subresource = status_subresource
        self.model: Type[Resource] = model

    @property
    def kind_name(self) -> str:
        return self.model.KIND

    @property
    def custom(self) -> bool:
        """Served by CustomObjectsApi rather than a built-in API group."""
        return self.group not in ("", "storage.k8s.io")

    @classmethod
    def for_object(cls, obj: Resource) -> "Kind":
        for kind in cls:
            if isinstance(obj, kind.model):
                return kind
        raise KeyError(f"no kind registered for {type(obj).__name__}")

    @classmethod
    def for_object_kind(cls, kind_name: str) -> Optional["Kind"]:
        for kind in cls:
            if kind.kind_name == kind_name:
                return kind
        return None
