"""
Snapshot sources: objects whose volumes can be snapshotted.

A source is locked by two cooperating fields, a status marker naming the
snapshot and a protection finalizer. Lock acquisition is a two-step saga
(marker first, then finalizer) driven by successive reconcile passes, and
every step is re-derived from persisted state alone.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set, Type

import structlog

from ..cluster.kinds import Kind
from ..cluster.meta import cache_key
from ..cluster.resources import Pod, RunStrategy, VirtualMachine
from ..errors import NotFoundError, UnknownSourceError
from ..interfaces.store import ObjectCache, ResourceClient
from .models import SourceSpec, VirtualMachineSnapshot

log = structlog.get_logger(__name__)

SOURCE_FINALIZER = "snapshot.kubevirt.io/snapshot-source-protection"


class SnapshotSource(ABC):
    """Capability interface over a snapshottable object."""

    def __init__(self, snapshot: VirtualMachineSnapshot, cache: ObjectCache, client: ResourceClient):
        self.snapshot = snapshot
        self.cache = cache
        self.client = client

    @classmethod
    @abstractmethod
    def load(
        cls,
        snapshot: VirtualMachineSnapshot,
        cache: ObjectCache,
        client: ResourceClient,
    ) -> Optional["SnapshotSource"]:
        """Build the source for ``snapshot``; None if the object does not exist."""
        pass

    @property
    @abstractmethod
    def uid(self) -> str:
        pass

    @abstractmethod
    def locked(self) -> bool:
        """True iff this snapshot fully holds the lock (marker and finalizer)."""
        pass

    @abstractmethod
    def lock(self) -> bool:
        """Advance lock acquisition by one step. Returns True once locked."""
        pass

    @abstractmethod
    def unlock(self) -> bool:
        """Release the lock. Returns True if anything was written."""
        pass

    @abstractmethod
    def spec(self) -> SourceSpec:
        """Point-in-time copy of the source's configuration."""
        pass

    @abstractmethod
    def claim_names(self) -> Dict[str, str]:
        """Map volume name -> claim name."""
        pass


class VirtualMachineSource(SnapshotSource):
    """A halted VirtualMachine."""

    def __init__(
        self,
        vm: VirtualMachine,
        snapshot: VirtualMachineSnapshot,
        cache: ObjectCache,
        client: ResourceClient,
    ):
        super().__init__(snapshot, cache, client)
        self.vm = vm

    @classmethod
    def load(
        cls,
        snapshot: VirtualMachineSnapshot,
        cache: ObjectCache,
        client: ResourceClient,
    ) -> Optional["VirtualMachineSource"]:
        key = cache_key(snapshot.namespace, snapshot.spec.source.name)
        vm = cache.get_by_key(Kind.VIRTUAL_MACHINE, key)
        if vm is None:
            return None
        return cls(vm, snapshot, cache, client)

    @property
    def uid(self) -> str:
        return self.vm.metadata.uid

    def locked(self) -> bool:
        return (
            self.vm.status.snapshot_in_progress == self.snapshot.name
            and self.vm.metadata.has_finalizer(SOURCE_FINALIZER)
        )

    def lock(self) -> bool:
        if self.locked():
            return True

        if self.vm.run_strategy() != RunStrategy.HALTED:
            log.debug("source.lock.vm_not_halted", vm=self.vm.key)
            return False

        if self.cache.get_by_key(Kind.VIRTUAL_MACHINE_INSTANCE, self.vm.key) is not None:
            log.debug("source.lock.vmi_running", vm=self.vm.key)
            return False

        claims = set(self.claim_names().values())
        pods = pods_using_claims(self.cache, self.vm.namespace, claims)
        if pods:
            log.debug(
                "source.lock.claims_in_use",
                vm=self.vm.key,
                pods=[p.name for p in pods],
                claims=sorted(claims),
            )
            return False

        marker = self.vm.status.snapshot_in_progress
        if marker is not None and marker != self.snapshot.name:
            log.debug("source.lock.held_by_other", vm=self.vm.key, holder=marker)
            return False

        vm = self.vm.deep_copy()

        if marker is None:
            log.info("source.lock.marker_set", vm=self.vm.key, snapshot=self.snapshot.name)
            vm.status.snapshot_in_progress = self.snapshot.name
            # the watch on VMs triggers the next step
            self.client.update_status(vm)
            return False

        if not vm.metadata.has_finalizer(SOURCE_FINALIZER):
            log.info("source.lock.finalizer_added", vm=self.vm.key, snapshot=self.snapshot.name)
            vm.metadata.add_finalizer(SOURCE_FINALIZER)
            self.client.update(vm)

        return True

    def unlock(self) -> bool:
        return release_vm_lock(self.client, self.vm, self.snapshot.name)

    def spec(self) -> SourceSpec:
        data = self.vm.deep_copy().to_dict()
        data.pop("status", None)
        return SourceSpec(virtual_machine=data)

    def claim_names(self) -> Dict[str, str]:
        return self.vm.claim_names()


def release_vm_lock(client: ResourceClient, vm: VirtualMachine, snapshot_name: str) -> bool:
    """Drop ``snapshot_name``'s lock on ``vm``. Returns False if it does not hold it."""
    if vm.status.snapshot_in_progress != snapshot_name:
        return False

    vm = vm.deep_copy()

    # finalizer first: a crash between the two writes leaves locked() False
    if vm.metadata.has_finalizer(SOURCE_FINALIZER):
        vm.metadata.remove_finalizer(SOURCE_FINALIZER)
        vm = client.update(vm)

    vm.status.snapshot_in_progress = None
    try:
        client.update_status(vm)
    except NotFoundError:
        # the finalizer was the last thing keeping a deleted VM around
        log.debug("source.gone_after_unlock", vm=vm.key)
    log.info("source.unlocked", vm=vm.key, snapshot=snapshot_name)
    return True


SOURCE_KINDS: Dict[str, Type[SnapshotSource]] = {
    VirtualMachine.KIND: VirtualMachineSource,
}


def source_for(
    snapshot: VirtualMachineSnapshot,
    cache: ObjectCache,
    client: ResourceClient,
) -> Optional[SnapshotSource]:
    """Resolve the snapshot's source, or None if the source object does not exist."""
    ref = snapshot.spec.source
    source_cls = SOURCE_KINDS.get(ref.kind)
    if source_cls is None:
        raise UnknownSourceError(ref.kind, ref.name)
    return source_cls.load(snapshot, cache, client)


def pods_using_claims(cache: ObjectCache, namespace: str, claim_names: Set[str]) -> List[Pod]:
    """Active pods in ``namespace`` that mount any of ``claim_names``."""
    if not claim_names:
        return []

    pods = []
    for pod in cache.list(Kind.POD, namespace):
        if not pod.active:
            continue
        if claim_names.intersection(pod.claim_names()):
            pods.append(pod)
    return pods
