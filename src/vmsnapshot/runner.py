"""
Controller driver.

Maps watch notifications onto snapshot and content keys, feeds them to
worker threads through two work queues and applies the reconcilers'
requeue decisions. Failed passes are retried with per-key exponential
backoff.
"""

import threading
import time
from typing import Callable, List, Optional

import structlog

from .backends.memory import WatchEvent
from .cluster.kinds import Kind
from .cluster.meta import cache_key, split_key
from .errors import ApiError, ConflictError, VMSnapshotError
from .events import EventReason, EventType
from .logging import log_operation
from .snapshots.controller import SnapshotController
from .snapshots.models import VirtualMachineSnapshotContent
from .workqueue import WorkQueue

log = structlog.get_logger(__name__)

# kinds whose changes can unblock a reconcile pass
WATCHED_KINDS = [
    Kind.SNAPSHOT,
    Kind.SNAPSHOT_CONTENT,
    Kind.VIRTUAL_MACHINE,
    Kind.VIRTUAL_MACHINE_INSTANCE,
    Kind.VOLUME_SNAPSHOT,
]

# kinds only read during a pass
LOOKUP_KINDS = [
    Kind.POD,
    Kind.PERSISTENT_VOLUME_CLAIM,
    Kind.STORAGE_CLASS,
    Kind.VOLUME_SNAPSHOT_CLASS,
]


class SnapshotRunner:
    """
    Runs a :class:`SnapshotController` against a watchable cluster.

    Usage:
        runner = SnapshotRunner(controller, cluster, workers=2)
        stop = threading.Event()
        runner.run(stop)
    """

    def __init__(
        self,
        controller: SnapshotController,
        watchable,
        workers: int = 2,
        backoff_base: float = 0.005,
        backoff_max: float = 300.0,
        resync_period: float = 0.0,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.controller = controller
        self.cache = controller.cache
        self.workers = workers
        self.resync_period = resync_period
        self.snapshot_queue = WorkQueue(backoff_base, backoff_max, time_fn)
        self.content_queue = WorkQueue(backoff_base, backoff_max, time_fn)
        self._threads: List[threading.Thread] = []
        watchable.watch(self.handle_event)

    # -- watch fan-in -----------------------------------------------------

    def handle_event(self, event: WatchEvent) -> None:
        obj = event.object
        if event.kind == Kind.SNAPSHOT:
            self.snapshot_queue.add(obj.key)
        elif event.kind == Kind.SNAPSHOT_CONTENT:
            self.content_queue.add(obj.key)
            if obj.spec.snapshot_name:
                self.snapshot_queue.add(cache_key(obj.namespace, obj.spec.snapshot_name))
        elif event.kind in (Kind.VIRTUAL_MACHINE, Kind.VIRTUAL_MACHINE_INSTANCE):
            self._enqueue_for_vm(event)
        elif event.kind == Kind.VOLUME_SNAPSHOT:
            owner = obj.metadata.controller_owner()
            if owner is not None and owner.kind == VirtualMachineSnapshotContent.KIND:
                self.content_queue.add(cache_key(obj.namespace, owner.name))

    def _enqueue_for_vm(self, event: WatchEvent) -> None:
        obj = event.object
        for snapshot in self.cache.list(Kind.SNAPSHOT, obj.namespace):
            source = snapshot.spec.source
            if source.kind == "VirtualMachine" and source.name == obj.name:
                self.snapshot_queue.add(snapshot.key)

        if event.kind != Kind.VIRTUAL_MACHINE:
            return
        # the lock holder may be a snapshot that no longer names this VM
        for vm in (event.old, event.new):
            if vm is not None and vm.status.snapshot_in_progress:
                self.snapshot_queue.add(cache_key(vm.namespace, vm.status.snapshot_in_progress))

    def enqueue_all(self) -> None:
        """Queue every known snapshot and content, as after a (re)list."""
        for snapshot in self.cache.list(Kind.SNAPSHOT):
            self.snapshot_queue.add(snapshot.key)
        for content in self.cache.list(Kind.SNAPSHOT_CONTENT):
            self.content_queue.add(content.key)

    # -- processing -------------------------------------------------------

    def process_next_snapshot(self, timeout: Optional[float] = None) -> bool:
        """Handle one snapshot key. Returns False if none was available."""
        return self._process_next(self.snapshot_queue, self._sync_snapshot, "reconcile_snapshot", timeout)

    def process_next_content(self, timeout: Optional[float] = None) -> bool:
        """Handle one content key. Returns False if none was available."""
        return self._process_next(self.content_queue, self._sync_content, "reconcile_content", timeout)

    def _sync_snapshot(self, key: str) -> float:
        snapshot = self.cache.get_by_key(Kind.SNAPSHOT, key)
        if snapshot is None:
            namespace, name = split_key(key)
            self.controller.release_orphaned_locks(namespace, name)
            return 0
        return self.controller.reconcile_snapshot(snapshot)

    def _sync_content(self, key: str) -> float:
        content = self.cache.get_by_key(Kind.SNAPSHOT_CONTENT, key)
        if content is None:
            return 0
        return self.controller.reconcile_content(content)

    def _process_next(
        self,
        queue: WorkQueue,
        sync: Callable[[str], float],
        operation: str,
        timeout: Optional[float],
    ) -> bool:
        key = queue.get(timeout)
        if key is None:
            return False

        try:
            with log_operation(log, operation, expected=(ConflictError,), key=key):
                requeue = sync(key)
        except ConflictError:
            queue.add_rate_limited(key)
        except VMSnapshotError as e:
            if not isinstance(e, ApiError):
                self._warn(queue, key, e)
            queue.add_rate_limited(key)
        except Exception:
            # already logged by log_operation; keep the worker alive
            queue.add_rate_limited(key)
        else:
            queue.forget(key)
            if requeue > 0:
                queue.add_after(key, requeue)
        finally:
            queue.done(key)
        return True

    def _warn(self, queue: WorkQueue, key: str, error: VMSnapshotError) -> None:
        kind = Kind.SNAPSHOT if queue is self.snapshot_queue else Kind.SNAPSHOT_CONTENT
        obj = self.cache.get_by_key(kind, key)
        if obj is not None:
            self.controller.recorder.event(obj, EventType.WARNING, EventReason.RECONCILE_FAILED, str(error))

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start worker threads for both queues."""
        self.enqueue_all()
        for i in range(self.workers):
            for name, worker in (
                ("snapshot", self.process_next_snapshot),
                ("content", self.process_next_content),
            ):
                thread = threading.Thread(
                    target=self._worker, args=(worker,), name=f"{name}-worker-{i}", daemon=True
                )
                thread.start()
                self._threads.append(thread)
        log.info("runner.started", workers=self.workers)

    def _worker(self, process: Callable[[Optional[float]], bool]) -> None:
        while process(None):
            pass

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self.snapshot_queue.shutdown()
        self.content_queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        log.info("runner.stopped")

    def run(self, stop: threading.Event) -> None:
        """Run until ``stop`` is set, resyncing periodically if configured."""
        self.start()
        try:
            while not stop.is_set():
                if self.resync_period > 0:
                    if stop.wait(self.resync_period):
                        break
                    log.debug("runner.resync")
                    self.enqueue_all()
                else:
                    stop.wait(1.0)
        finally:
            self.stop()
