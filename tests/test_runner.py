"""Tests for the watch-driven runner."""
import threading

import pytest

from vmsnapshot.cluster.kinds import Kind
from vmsnapshot.cluster.meta import ObjectMeta, OwnerReference
from vmsnapshot.cluster.resources import VolumeSnapshot
from vmsnapshot.errors import ConflictError
from vmsnapshot.events import EventReason, EventType
from vmsnapshot.runner import SnapshotRunner
from vmsnapshot.snapshots.controller import CONTENT_FINALIZER, SNAPSHOT_FINALIZER
from vmsnapshot.snapshots.models import ContentSpec, VirtualMachineSnapshotContent
from vmsnapshot.snapshots.source import SOURCE_FINALIZER

NS = "default"


class FakeTime:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def runner(controller, cluster, fake_time):
    return SnapshotRunner(controller, cluster, workers=1, backoff_base=1.0, time_fn=fake_time)


def drain(runner, limit=500):
    """Process queued keys until both queues are idle."""
    for _ in range(limit):
        processed = runner.process_next_snapshot(timeout=0)
        processed = runner.process_next_content(timeout=0) or processed
        if not processed:
            return
    raise AssertionError("queues did not drain")


class TestEndToEnd:
    def test_snapshot_becomes_ready_and_releases_vm(self, runner, build, cluster, drive):
        build.environment()
        build.vm()
        snapshot = build.snapshot()
        drain(runner)

        content_name = f"vmsnapshot-content-{snapshot.metadata.uid}"
        volume_snapshot = f"vmsnapshot-{snapshot.metadata.uid}-volume-disk1"
        assert cluster.get(Kind.VOLUME_SNAPSHOT, NS, volume_snapshot).claim_name == "pvc1"
        assert drive.get_vm().status.snapshot_in_progress == "snap1"
        assert drive.get_snapshot().ready is False

        build.volume_snapshot_status(volume_snapshot)
        drain(runner)

        content = cluster.get(Kind.SNAPSHOT_CONTENT, NS, content_name)
        assert content.ready
        assert content.metadata.finalizers == [CONTENT_FINALIZER]

        snap = drive.get_snapshot()
        assert snap.ready
        assert snap.metadata.finalizers == [SNAPSHOT_FINALIZER]
        assert snap.status.content_name == content_name

        vm = drive.get_vm()
        assert vm.status.snapshot_in_progress is None
        assert SOURCE_FINALIZER not in vm.metadata.finalizers

    def test_deletion_removes_everything(self, runner, build, cluster):
        build.environment()
        build.vm()
        snapshot = build.snapshot()
        drain(runner)
        build.volume_snapshot_status(f"vmsnapshot-{snapshot.metadata.uid}-volume-disk1")
        drain(runner)

        cluster.delete(Kind.SNAPSHOT, NS, "snap1")
        drain(runner)

        assert cluster.list(Kind.SNAPSHOT) == []
        assert cluster.list(Kind.SNAPSHOT_CONTENT) == []
        assert cluster.list(Kind.VOLUME_SNAPSHOT) == []


class TestErrors:
    def test_unknown_source_is_reported_and_retried(self, runner, build, recorder):
        build.snapshot(kind="VirtualMachineInstance")
        drain(runner)

        assert runner.snapshot_queue.num_requeues(f"{NS}/snap1") == 1
        [event] = recorder.events
        assert event.event_type == EventType.WARNING
        assert event.reason == EventReason.RECONCILE_FAILED.value
        assert event.message == "unknown source VirtualMachineInstance/vm1"

    def test_unknown_run_strategy_is_reported(self, runner, build, recorder):
        build.vm(running=None, run_strategy="Sometimes")
        build.snapshot()
        drain(runner)

        assert runner.snapshot_queue.num_requeues(f"{NS}/snap1") == 1
        assert EventReason.RECONCILE_FAILED.value in [e.reason for e in recorder.events]

    def test_backoff_retry_after_delay(self, runner, build, recorder, fake_time):
        build.snapshot(kind="VirtualMachineInstance")
        drain(runner)

        fake_time.now += 1.0
        drain(runner)
        assert runner.snapshot_queue.num_requeues(f"{NS}/snap1") == 2
        assert len(recorder.events) == 2

    def test_conflict_is_retried_quietly(self, runner, build, controller, recorder, monkeypatch):
        def conflict(snapshot):
            raise ConflictError("VirtualMachineSnapshot", snapshot.key)

        monkeypatch.setattr(controller, "reconcile_snapshot", conflict)
        build.snapshot()
        drain(runner)

        assert runner.snapshot_queue.num_requeues(f"{NS}/snap1") == 1
        assert recorder.events == []

    def test_unexpected_error_keeps_worker_alive(self, runner, build, controller, monkeypatch):
        def boom(snapshot):
            raise RuntimeError("boom")

        monkeypatch.setattr(controller, "reconcile_snapshot", boom)
        build.snapshot()
        assert runner.process_next_snapshot(timeout=0) is True
        assert runner.snapshot_queue.num_requeues(f"{NS}/snap1") == 1

    def test_success_resets_backoff(self, runner, build, controller, monkeypatch, fake_time):
        calls = []

        def flaky(snapshot):
            calls.append(snapshot.key)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return 0

        monkeypatch.setattr(controller, "reconcile_snapshot", flaky)
        build.snapshot()
        drain(runner)
        fake_time.now += 1.0
        drain(runner)

        assert len(calls) == 2
        assert runner.snapshot_queue.num_requeues(f"{NS}/snap1") == 0


class TestEventRouting:
    def test_orphaned_marker_is_released(self, runner, build, cluster, drive):
        build.vm()
        vm = drive.get_vm()
        vm.status.snapshot_in_progress = "gone"
        cluster.update_status(vm)

        drain(runner)
        assert drive.get_vm().status.snapshot_in_progress is None

    def test_content_enqueues_its_snapshot(self, runner, cluster):
        cluster.create(
            VirtualMachineSnapshotContent(
                metadata=ObjectMeta(name="content1", namespace=NS),
                spec=ContentSpec(snapshot_name="snap1"),
            )
        )
        assert runner.snapshot_queue.get(timeout=0) == f"{NS}/snap1"
        assert runner.content_queue.get(timeout=0) == f"{NS}/content1"

    def test_volume_snapshot_enqueues_owning_content(self, runner, cluster):
        owner = OwnerReference(
            "snapshot.kubevirt.io/v1alpha1", "VirtualMachineSnapshotContent", "content1", "uid-1", True, True
        )
        cluster.create(
            VolumeSnapshot(metadata=ObjectMeta(name="vs1", namespace=NS, owner_references=[owner]))
        )
        cluster.create(VolumeSnapshot(metadata=ObjectMeta(name="vs2", namespace=NS)))

        assert runner.content_queue.get(timeout=0) == f"{NS}/content1"
        assert runner.content_queue.get(timeout=0) is None

    def test_vmi_enqueues_snapshots_of_its_vm(self, runner, build, cluster):
        build.snapshot("snap1", vm="vm1")
        build.snapshot("snap2", vm="vm2")
        runner.snapshot_queue.get(timeout=0)
        runner.snapshot_queue.done(f"{NS}/snap1")
        runner.snapshot_queue.get(timeout=0)
        runner.snapshot_queue.done(f"{NS}/snap2")

        build.vmi("vm1")
        assert runner.snapshot_queue.get(timeout=0) == f"{NS}/snap1"
        assert runner.snapshot_queue.get(timeout=0) is None

    def test_enqueue_all(self, controller, build, cluster):
        build.snapshot()
        cluster.create(
            VirtualMachineSnapshotContent(metadata=ObjectMeta(name="content1", namespace=NS), spec=ContentSpec())
        )
        runner = SnapshotRunner(controller, cluster)
        runner.enqueue_all()
        assert len(runner.snapshot_queue) == 1
        assert len(runner.content_queue) == 1


class TestLifecycle:
    def test_start_and_stop(self, controller, cluster):
        runner = SnapshotRunner(controller, cluster, workers=2)
        runner.start()
        threads = list(runner._threads)
        assert len(threads) == 4

        runner.stop(timeout=5)
        assert not any(t.is_alive() for t in threads)

    def test_run_returns_when_stopped(self, controller, cluster):
        runner = SnapshotRunner(controller, cluster, workers=1, resync_period=0.01)
        stop = threading.Event()
        stop.set()
        runner.run(stop)
        assert runner.snapshot_queue.shutting_down
