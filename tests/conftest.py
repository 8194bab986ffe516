"""
Pytest fixtures and configuration for vmsnapshot tests.
"""
from typing import Dict, List, Optional

import pytest

from vmsnapshot.backends.memory import InMemoryCluster
from vmsnapshot.clock import FakeClock
from vmsnapshot.cluster.kinds import Kind
from vmsnapshot.cluster.meta import ObjectMeta
from vmsnapshot.cluster.resources import (
    DEFAULT_SNAPSHOT_CLASS_ANNOTATION,
    PersistentVolumeClaim,
    Pod,
    PodPhase,
    StorageClass,
    VirtualMachine,
    VirtualMachineInstance,
    VolumeSnapshotClass,
    VolumeSnapshotError,
    VolumeSnapshotStatus,
)
from vmsnapshot.events import MemoryEventRecorder
from vmsnapshot.snapshots.controller import SnapshotController
from vmsnapshot.snapshots.models import (
    DeletionPolicy,
    SnapshotSpec,
    SourceReference,
    VirtualMachineSnapshot,
)

NAMESPACE = "default"
PROVISIONER = "csi.example.com"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster(clock):
    return InMemoryCluster(clock)


@pytest.fixture
def recorder(clock):
    return MemoryEventRecorder(clock)


@pytest.fixture
def controller(cluster, recorder, clock):
    return SnapshotController(cluster, cluster, recorder, clock=clock, retry_interval=5.0)


class Builder:
    """Creates objects in an InMemoryCluster with sensible defaults."""

    def __init__(self, cluster: InMemoryCluster):
        self.cluster = cluster

    def storage_class(self, name: str = "standard", provisioner: str = PROVISIONER) -> StorageClass:
        return self.cluster.create(StorageClass(metadata=ObjectMeta(name=name), provisioner=provisioner))

    def snapshot_class(
        self, name: str = "csi-snapclass", driver: str = PROVISIONER, default: bool = False
    ) -> VolumeSnapshotClass:
        annotations = {DEFAULT_SNAPSHOT_CLASS_ANNOTATION: "true"} if default else {}
        return self.cluster.create(
            VolumeSnapshotClass(metadata=ObjectMeta(name=name, annotations=annotations), driver=driver)
        )

    def pvc(
        self,
        name: str = "pvc1",
        storage_class: Optional[str] = "standard",
        bound: bool = True,
        namespace: str = NAMESPACE,
    ) -> PersistentVolumeClaim:
        spec: Dict = {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "1Gi"}}}
        if storage_class is not None:
            spec["storageClassName"] = storage_class
        status = {}
        if bound:
            spec["volumeName"] = f"pv-{name}"
            status = {"phase": "Bound"}
        return self.cluster.create(
            PersistentVolumeClaim(
                metadata=ObjectMeta(name=name, namespace=namespace), spec=spec, status=status
            )
        )

    def vm(
        self,
        name: str = "vm1",
        claims: Optional[Dict[str, str]] = None,
        data_volumes: Optional[Dict[str, str]] = None,
        running: Optional[bool] = False,
        run_strategy: Optional[str] = None,
        namespace: str = NAMESPACE,
    ) -> VirtualMachine:
        if claims is None:
            claims = {"disk1": "pvc1"}
        volumes: List[Dict] = [
            {"name": volume, "persistentVolumeClaim": {"claimName": claim}}
            for volume, claim in claims.items()
        ]
        for volume, dv in (data_volumes or {}).items():
            volumes.append({"name": volume, "dataVolume": {"name": dv}})
        volumes.append({"name": "cloudinit", "cloudInitNoCloud": {"userData": "#cloud-config"}})

        spec: Dict = {"template": {"spec": {"domain": {"devices": {}}, "volumes": volumes}}}
        if running is not None:
            spec["running"] = running
        if run_strategy is not None:
            spec["runStrategy"] = run_strategy
        return self.cluster.create(
            VirtualMachine(metadata=ObjectMeta(name=name, namespace=namespace), spec=spec)
        )

    def vmi(self, name: str = "vm1", namespace: str = NAMESPACE) -> VirtualMachineInstance:
        return self.cluster.create(VirtualMachineInstance(metadata=ObjectMeta(name=name, namespace=namespace)))

    def pod(
        self,
        name: str = "virt-launcher-vm1",
        claims: Optional[List[str]] = None,
        phase: PodPhase = PodPhase.RUNNING,
        namespace: str = NAMESPACE,
    ) -> Pod:
        volumes = [
            {"name": claim, "persistentVolumeClaim": {"claimName": claim}}
            for claim in (claims if claims is not None else ["pvc1"])
        ]
        return self.cluster.create(
            Pod(metadata=ObjectMeta(name=name, namespace=namespace), spec={"volumes": volumes}, phase=phase)
        )

    def snapshot(
        self,
        name: str = "snap1",
        vm: str = "vm1",
        kind: str = "VirtualMachine",
        deletion_policy: Optional[DeletionPolicy] = None,
        namespace: str = NAMESPACE,
    ) -> VirtualMachineSnapshot:
        return self.cluster.create(
            VirtualMachineSnapshot(
                metadata=ObjectMeta(name=name, namespace=namespace),
                spec=SnapshotSpec(
                    source=SourceReference(kind=kind, name=vm, api_group="kubevirt.io"),
                    deletion_policy=deletion_policy,
                ),
            )
        )

    def environment(self) -> None:
        """A storage class with one matching snapshot class and a bound claim."""
        self.storage_class()
        self.snapshot_class()
        self.pvc()

    def volume_snapshot_status(
        self,
        name: str,
        ready: Optional[bool] = True,
        error: Optional[str] = None,
        namespace: str = NAMESPACE,
    ) -> None:
        """Play the external snapshotter: report status on a VolumeSnapshot."""
        volume_snapshot = self.cluster.get(Kind.VOLUME_SNAPSHOT, namespace, name)
        volume_snapshot.status = VolumeSnapshotStatus(
            ready_to_use=ready,
            creation_time=self.cluster.clock.now(),
            error=VolumeSnapshotError(message=error, time=self.cluster.clock.now()) if error else None,
        )
        self.cluster.update_status(volume_snapshot)


@pytest.fixture
def build(cluster):
    return Builder(cluster)


class Driver:
    """Runs reconcile passes against the current cluster state."""

    def __init__(self, controller: SnapshotController, cluster: InMemoryCluster):
        self.controller = controller
        self.cluster = cluster

    def snapshot(self, name: str = "snap1", namespace: str = NAMESPACE) -> float:
        snapshot = self.cluster.get(Kind.SNAPSHOT, namespace, name)
        return self.controller.reconcile_snapshot(snapshot)

    def content(self, name: str, namespace: str = NAMESPACE) -> float:
        content = self.cluster.get(Kind.SNAPSHOT_CONTENT, namespace, name)
        return self.controller.reconcile_content(content)

    def converge(self, name: str = "snap1", namespace: str = NAMESPACE, limit: int = 30) -> None:
        """Alternate snapshot and content passes until nothing is written."""
        for _ in range(limit):
            before = len(self.cluster.actions)
            snapshot = self.cluster.get_by_key(Kind.SNAPSHOT, f"{namespace}/{name}")
            if snapshot is not None:
                self.controller.reconcile_snapshot(snapshot)
                content = self.cluster.get_by_key(
                    Kind.SNAPSHOT_CONTENT, f"{namespace}/{snapshot.content_name}"
                )
                if content is not None:
                    self.controller.reconcile_content(content)
            if len(self.cluster.actions) == before:
                return
        raise AssertionError(f"{namespace}/{name} did not converge")

    def get_snapshot(self, name: str = "snap1", namespace: str = NAMESPACE) -> VirtualMachineSnapshot:
        return self.cluster.get(Kind.SNAPSHOT, namespace, name)

    def get_vm(self, name: str = "vm1", namespace: str = NAMESPACE) -> VirtualMachine:
        return self.cluster.get(Kind.VIRTUAL_MACHINE, namespace, name)


@pytest.fixture
def drive(controller, cluster):
    return Driver(controller, cluster)
