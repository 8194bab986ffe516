"""
Snapshot and content reconcilers.

Both reconcilers are level triggered: each pass reads the current cached
state, performs at most one mutating step toward convergence and returns a
requeue delay (0 when the next change notification is enough). Errors are
not classified here; they propagate to the runner, which retries with
backoff.
"""

from typing import List, Optional, Tuple

import structlog

from ..clock import Clock, SystemClock
from ..cluster.kinds import Kind
from ..cluster.meta import ObjectMeta, OwnerReference, cache_key
from ..cluster.resources import PersistentVolumeClaim, VolumeSnapshot, VolumeSnapshotError
from ..errors import AlreadyExistsError, MissingStorageClassError, NotFoundError
from ..events import EventReason, EventRecorder, EventType
from ..interfaces.store import ObjectCache, ResourceClient
from .classes import resolve_snapshot_class
from .conditions import (
    REASON_CANCELLED,
    REASON_COMPLETE,
    REASON_ERROR,
    REASON_IN_ERROR,
    REASON_NOT_READY,
    REASON_SOURCE_LOCKED,
    REASON_SOURCE_MISSING,
    REASON_SOURCE_NOT_LOCKED,
    REASON_UNKNOWN,
    new_error,
    new_progressing_condition,
    new_ready_condition,
    set_conditions,
)
from .models import (
    SNAPSHOT_API_VERSION,
    ConditionStatus,
    ContentSpec,
    ContentStatus,
    DeletionPolicy,
    SnapshotError,
    SnapshotStatus,
    VirtualMachineSnapshot,
    VirtualMachineSnapshotContent,
    VolumeBackup,
    VolumeBackupStatus,
)
from .source import SnapshotSource, release_vm_lock, source_for

log = structlog.get_logger(__name__)

SNAPSHOT_FINALIZER = "snapshot.kubevirt.io/vmsnapshot-protection"
CONTENT_FINALIZER = "snapshot.kubevirt.io/vmsnapshotcontent-protection"

DEFAULT_RETRY_INTERVAL = 5.0


def translate_error(error: Optional[VolumeSnapshotError]) -> Optional[SnapshotError]:
    if error is None:
        return None
    return SnapshotError(message=error.message, time=error.time)


class SnapshotController:
    """Reconciles VirtualMachineSnapshots and their generated content."""

    def __init__(
        self,
        cache: ObjectCache,
        client: ResourceClient,
        recorder: EventRecorder,
        clock: Optional[Clock] = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        self.cache = cache
        self.client = client
        self.recorder = recorder
        self.clock = clock or SystemClock()
        self.retry_interval = retry_interval

    # -- snapshot ---------------------------------------------------------

    def reconcile_snapshot(self, snapshot: VirtualMachineSnapshot) -> float:
        """Advance one snapshot by a single step. Returns the requeue delay."""
        slog = log.bind(snapshot=snapshot.key)
        slog.debug("snapshot.reconcile")

        if snapshot.status is None:
            self._update_snapshot_status(snapshot, None)
            return 0

        source = source_for(snapshot, self.cache, self.client)

        # release the source once done, before anything else
        if not snapshot.progressing and source is not None:
            if source.unlock():
                return 0

        if snapshot.deleting:
            self._cleanup_snapshot(snapshot)
            return 0

        if source is not None and snapshot.progressing:
            if not source.locked():
                locked = source.lock()
                slog.debug("snapshot.lock_attempted", locked=locked)
                # wait for the lock to be observed in the cache
                return self.retry_interval

            if self._ensure_snapshot_finalizer(snapshot):
                return 0

            if self._get_content(snapshot) is None:
                self._create_content(snapshot, source)
                return 0

        self._update_snapshot_status(snapshot, source)
        return 0

    def release_orphaned_locks(self, namespace: str, snapshot_name: str) -> int:
        """Unlock VMs still marked by a snapshot that no longer exists.

        A snapshot deleted between lock phase 1 and its own finalizer being
        set disappears without a cleanup pass; this releases its marker.
        """
        released = 0
        for vm in self.cache.list(Kind.VIRTUAL_MACHINE, namespace):
            if vm.status.snapshot_in_progress != snapshot_name:
                continue
            if release_vm_lock(self.client, vm, snapshot_name):
                log.info("source.orphaned_lock_released", vm=vm.key, snapshot=snapshot_name)
                released += 1
        return released

    def _ensure_snapshot_finalizer(self, snapshot: VirtualMachineSnapshot) -> bool:
        if snapshot.metadata.has_finalizer(SNAPSHOT_FINALIZER):
            return False

        updated = snapshot.deep_copy()
        updated.metadata.add_finalizer(SNAPSHOT_FINALIZER)
        self.client.update(updated)
        return True

    def _cleanup_snapshot(self, snapshot: VirtualMachineSnapshot) -> None:
        """Deletion path. Each call performs the next outstanding step."""
        if snapshot.progressing:
            # record a cancelled outcome before tearing anything down
            self._update_snapshot_status(snapshot, None)
            return

        content = self._get_content(snapshot)
        if content is not None:
            if content.metadata.has_finalizer(CONTENT_FINALIZER):
                updated = content.deep_copy()
                updated.metadata.remove_finalizer(CONTENT_FINALIZER)
                self.client.update(updated)
                return

            if snapshot.deletion_policy == DeletionPolicy.DELETE:
                if content.metadata.deletion_timestamp is None:
                    log.info("content.deleting", content=content.key, snapshot=snapshot.key)
                    try:
                        self.client.delete(Kind.SNAPSHOT_CONTENT, content.namespace, content.name)
                    except NotFoundError:
                        pass
                    return
            else:
                log.info("content.retained", content=content.key, snapshot=snapshot.key)

        if snapshot.metadata.has_finalizer(SNAPSHOT_FINALIZER):
            updated = snapshot.deep_copy()
            updated.metadata.remove_finalizer(SNAPSHOT_FINALIZER)
            self.client.update(updated)
            log.info("snapshot.released", snapshot=snapshot.key)

    def _create_content(self, snapshot: VirtualMachineSnapshot, source: SnapshotSource) -> None:
        volume_backups: List[VolumeBackup] = []
        for volume_name, claim_name in sorted(source.claim_names().items()):
            claim = self._get_snapshot_claim(snapshot.namespace, claim_name)
            if claim is None:
                log.warning(
                    "content.volume_skipped",
                    snapshot=snapshot.key,
                    volume=volume_name,
                    claim=claim_name,
                )
                continue

            claim_copy = claim.to_dict()
            claim_copy.pop("status", None)
            volume_backups.append(
                VolumeBackup(
                    volume_name=volume_name,
                    persistent_volume_claim=claim_copy,
                    volume_snapshot_name=snapshot.volume_snapshot_name(volume_name),
                )
            )

        content = VirtualMachineSnapshotContent(
            metadata=ObjectMeta(
                name=snapshot.content_name,
                namespace=snapshot.namespace,
                finalizers=[CONTENT_FINALIZER],
            ),
            spec=ContentSpec(
                snapshot_name=snapshot.name,
                source=source.spec(),
                volume_backups=volume_backups,
            ),
        )

        try:
            self.client.create(content)
        except AlreadyExistsError:
            log.debug("content.already_exists", content=content.key)
            return

        log.info("content.created", content=content.key, volumes=len(volume_backups))
        self.recorder.event(
            snapshot,
            EventType.NORMAL,
            EventReason.CONTENT_CREATED,
            f"Successfully created VirtualMachineSnapshotContent {content.name}",
        )

    def _get_snapshot_claim(self, namespace: str, claim_name: str) -> Optional[PersistentVolumeClaim]:
        """A claim eligible for snapshotting: bound, classed and snapshot-capable."""
        claim = self.cache.get_by_key(Kind.PERSISTENT_VOLUME_CLAIM, cache_key(namespace, claim_name))
        if claim is None:
            return None

        if not claim.volume_name:
            log.warning("claim.unbound", claim=claim.key)
            return None

        if claim.storage_class_name is None:
            log.warning("claim.no_storage_class", claim=claim.key)
            return None

        if resolve_snapshot_class(self.cache, claim.storage_class_name):
            return claim
        return None

    def _update_snapshot_status(
        self,
        snapshot: VirtualMachineSnapshot,
        source: Optional[SnapshotSource],
    ) -> None:
        now = self.clock.now()
        updated = snapshot.deep_copy()
        if updated.status is None:
            updated.status = SnapshotStatus(ready_to_use=False)

        if source is not None:
            updated.status.source_uid = source.uid

        if updated.deleting:
            if updated.progressing:
                updated.status.error = new_error(REASON_CANCELLED, now)
                set_conditions(
                    updated,
                    new_progressing_condition(ConditionStatus.FALSE, REASON_CANCELLED, now),
                    new_ready_condition(ConditionStatus.FALSE, REASON_CANCELLED, now),
                )
                self._write_snapshot_status(snapshot, updated)
                return
        else:
            content = self._get_content(snapshot)
            if content is not None and content.status is not None:
                updated.status.content_name = content.name
                updated.status.creation_time = content.status.creation_time
                updated.status.ready_to_use = content.status.ready_to_use
                updated.status.error = content.status.error

        if updated.progressing:
            if source is None:
                source = source_for(snapshot, self.cache, self.client)
            if source is None:
                progressing = new_progressing_condition(ConditionStatus.FALSE, REASON_SOURCE_MISSING, now)
            elif source.locked():
                progressing = new_progressing_condition(ConditionStatus.TRUE, REASON_SOURCE_LOCKED, now)
            else:
                progressing = new_progressing_condition(ConditionStatus.FALSE, REASON_SOURCE_NOT_LOCKED, now)
            set_conditions(
                updated, progressing, new_ready_condition(ConditionStatus.FALSE, REASON_NOT_READY, now)
            )
        elif updated.error is not None:
            set_conditions(
                updated,
                new_progressing_condition(ConditionStatus.FALSE, REASON_IN_ERROR, now),
                new_ready_condition(ConditionStatus.FALSE, REASON_ERROR, now),
            )
        elif updated.ready:
            set_conditions(
                updated,
                new_progressing_condition(ConditionStatus.FALSE, REASON_COMPLETE, now),
                new_ready_condition(ConditionStatus.TRUE, REASON_COMPLETE, now),
            )
        else:
            set_conditions(
                updated,
                new_progressing_condition(ConditionStatus.UNKNOWN, REASON_UNKNOWN, now),
                new_ready_condition(ConditionStatus.UNKNOWN, REASON_UNKNOWN, now),
            )

        self._write_snapshot_status(snapshot, updated)

    def _write_snapshot_status(
        self,
        snapshot: VirtualMachineSnapshot,
        updated: VirtualMachineSnapshot,
    ) -> None:
        if updated == snapshot:
            return
        log.debug("snapshot.status_updated", snapshot=snapshot.key, ready=updated.ready)
        self.client.update(updated)

    def _get_content(self, snapshot: VirtualMachineSnapshot) -> Optional[VirtualMachineSnapshotContent]:
        return self.cache.get_by_key(
            Kind.SNAPSHOT_CONTENT, cache_key(snapshot.namespace, snapshot.content_name)
        )

    # -- content ----------------------------------------------------------

    def reconcile_content(self, content: VirtualMachineSnapshotContent) -> float:
        """Fan out VolumeSnapshots and fold their state into content status."""
        log.debug("content.reconcile", content=content.key)

        if content.metadata.deletion_timestamp is not None:
            return 0

        currently_ready = content.ready
        currently_error = content.failed
        requeue = 0.0

        statuses: List[VolumeBackupStatus] = []
        deleted: List[str] = []
        skipped: List[str] = []

        for backup in content.spec.volume_backups:
            if backup.volume_snapshot_name is None:
                continue

            name = backup.volume_snapshot_name
            volume_snapshot = self.cache.get_by_key(
                Kind.VOLUME_SNAPSHOT, cache_key(content.namespace, name)
            )

            if volume_snapshot is None:
                if currently_ready:
                    # a ready snapshot's data is immutable, never recreate
                    log.warning("volume_snapshot.missing", content=content.key, volume_snapshot=name)
                    self.recorder.event(
                        content,
                        EventType.WARNING,
                        EventReason.VOLUME_SNAPSHOT_MISSING,
                        f"VolumeSnapshot {name} no longer exists",
                    )
                    deleted.append(name)
                    continue

                if currently_error:
                    log.debug("volume_snapshot.skipped", content=content.key, volume_snapshot=name)
                    skipped.append(name)
                    continue

                volume_snapshot = self._create_volume_snapshot(content, backup)
                if volume_snapshot is None:
                    statuses.append(VolumeBackupStatus(volume_snapshot_name=name))
                    requeue = self.retry_interval
                    continue

            entry = VolumeBackupStatus(volume_snapshot_name=volume_snapshot.name)
            if volume_snapshot.status is not None:
                entry.ready_to_use = volume_snapshot.status.ready_to_use
                entry.creation_time = volume_snapshot.status.creation_time
                entry.error = translate_error(volume_snapshot.status.error)
            statuses.append(entry)

        updated = content.deep_copy()
        if updated.status is None:
            updated.status = ContentStatus()

        ready, error_message = self._aggregate(statuses, deleted, skipped)
        now = self.clock.now()

        if ready and updated.status.creation_time is None:
            updated.status.creation_time = now

        if error_message and (
            updated.status.error is None or updated.status.error.message != error_message
        ):
            updated.status.error = new_error(error_message, now)

        updated.status.ready_to_use = ready
        updated.status.volume_snapshot_status = statuses

        if updated != content:
            log.debug("content.status_updated", content=content.key, ready=ready)
            self.client.update(updated)

        return requeue

    @staticmethod
    def _aggregate(
        statuses: List[VolumeBackupStatus],
        deleted: List[str],
        skipped: List[str],
    ) -> Tuple[bool, str]:
        if deleted:
            return False, f"VolumeSnapshots ({','.join(deleted)}) missing"
        if skipped:
            return False, f"VolumeSnapshots ({','.join(skipped)}) skipped because in error state"

        ready = all(s.ready_to_use for s in statuses)
        for s in statuses:
            if s.error is not None:
                return ready, "VolumeSnapshot in error state"
        return ready, ""

    def _create_volume_snapshot(
        self,
        content: VirtualMachineSnapshotContent,
        backup: VolumeBackup,
    ) -> Optional[VolumeSnapshot]:
        storage_class = backup.storage_class_name
        if storage_class is None:
            raise MissingStorageClassError(content.namespace, backup.claim_name)

        class_name = resolve_snapshot_class(self.cache, storage_class)
        if not class_name:
            log.warning(
                "volume_snapshot.no_class",
                content=content.key,
                volume_snapshot=backup.volume_snapshot_name,
                storage_class=storage_class,
            )
            return None

        log.info("volume_snapshot.creating", content=content.key, volume_snapshot=backup.volume_snapshot_name)
        volume_snapshot = VolumeSnapshot(
            metadata=ObjectMeta(
                name=backup.volume_snapshot_name,
                namespace=content.namespace,
                owner_references=[
                    OwnerReference(
                        api_version=SNAPSHOT_API_VERSION,
                        kind=content.KIND,
                        name=content.name,
                        uid=content.metadata.uid,
                        controller=True,
                        block_owner_deletion=True,
                    )
                ],
            ),
            claim_name=backup.claim_name,
            snapshot_class_name=class_name,
        )

        try:
            created = self.client.create(volume_snapshot)
        except AlreadyExistsError:
            # created by an earlier pass not yet visible in the cache
            return self.client.get(Kind.VOLUME_SNAPSHOT, content.namespace, volume_snapshot.name)

        self.recorder.event(
            content,
            EventType.NORMAL,
            EventReason.VOLUME_SNAPSHOT_CREATED,
            f"Successfully created VolumeSnapshot {volume_snapshot.name}",
        )
        return created
