"""Tests for event recorders."""
import json
from datetime import datetime, timezone

import pytest

from vmsnapshot.events import (
    AuditEventRecorder,
    EventReason,
    EventType,
    FanOutEventRecorder,
    LoggingEventRecorder,
    MemoryEventRecorder,
    RecordedEvent,
)


@pytest.fixture
def snapshot(build):
    return build.snapshot()


class TestRecordedEvent:
    """Test RecordedEvent dataclass."""

    def test_event_id_is_generated(self, recorder, snapshot):
        event = recorder.event(snapshot, EventType.NORMAL, EventReason.CONTENT_CREATED, "created")
        assert len(event.event_id) == 16
        assert event.kind == "VirtualMachineSnapshot"
        assert event.uid == snapshot.metadata.uid

    def test_to_dict(self, recorder, snapshot):
        event = recorder.event(snapshot, EventType.WARNING, EventReason.VOLUME_SNAPSHOT_MISSING, "gone")
        d = event.to_dict()
        assert d["type"] == "Warning"
        assert d["reason"] == "VolumeSnapshotMissing"
        assert d["timestamp"] == "2020-01-01T00:00:00Z"
        assert d["involved_object"] == {
            "kind": "VirtualMachineSnapshot",
            "namespace": "default",
            "name": "snap1",
            "uid": snapshot.metadata.uid,
        }

    def test_from_dict(self):
        event = RecordedEvent.from_dict({
            "event_id": "abc",
            "type": "Normal",
            "reason": "SuccessfulVolumeSnapshotCreate",
            "message": "ok",
            "timestamp": "2020-01-01T00:00:00Z",
            "involved_object": {"kind": "VirtualMachineSnapshotContent", "namespace": "ns", "name": "c", "uid": "u"},
        })
        assert event.event_id == "abc"
        assert event.event_type == EventType.NORMAL
        assert event.timestamp == datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert event.name == "c"


class TestMemoryEventRecorder:
    def test_reasons_in_order(self, recorder, snapshot):
        recorder.event(snapshot, EventType.NORMAL, EventReason.CONTENT_CREATED, "a")
        recorder.event(snapshot, EventType.WARNING, EventReason.RECONCILE_FAILED, "b")
        assert recorder.reasons() == ["SuccessfulVirtualMachineSnapshotContentCreate", "ReconcileFailed"]


class TestAuditEventRecorder:
    """Test the JSON-lines audit trail."""

    def test_writes_json_lines(self, tmp_path, clock, snapshot):
        path = tmp_path / "logs" / "audit.log"
        recorder = AuditEventRecorder(path, clock)
        recorder.event(snapshot, EventType.NORMAL, EventReason.CONTENT_CREATED, "created")

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["reason"] == "SuccessfulVirtualMachineSnapshotContentCreate"

    def test_query_filters(self, tmp_path, clock, snapshot):
        recorder = AuditEventRecorder(tmp_path / "audit.log", clock)
        recorder.event(snapshot, EventType.NORMAL, EventReason.CONTENT_CREATED, "created")
        recorder.event(snapshot, EventType.WARNING, EventReason.RECONCILE_FAILED, "failed")
        recorder.event(snapshot, EventType.WARNING, EventReason.RECONCILE_FAILED, "failed again")

        assert len(recorder.query()) == 3
        assert [e.message for e in recorder.query(reason=EventReason.CONTENT_CREATED)] == ["created"]
        assert len(recorder.query(event_type=EventType.WARNING)) == 2
        assert recorder.query(name="other") == []
        assert len(recorder.query(limit=1)) == 1

    def test_query_skips_corrupt_lines(self, tmp_path, clock, snapshot):
        path = tmp_path / "audit.log"
        recorder = AuditEventRecorder(path, clock)
        recorder.event(snapshot, EventType.NORMAL, EventReason.CONTENT_CREATED, "created")
        with open(path, "a") as f:
            f.write("not json\n")

        assert len(recorder.query()) == 1

    def test_query_without_file(self, tmp_path, clock):
        recorder = AuditEventRecorder(tmp_path / "audit.log", clock)
        assert recorder.query() == []


def test_fan_out(clock, snapshot):
    first = MemoryEventRecorder(clock)
    second = MemoryEventRecorder(clock)
    recorder = FanOutEventRecorder(first, second, clock=clock)

    event = recorder.event(snapshot, EventType.NORMAL, EventReason.CONTENT_CREATED, "created")
    assert first.events == [event]
    assert second.events == [event]


def test_logging_recorder(clock, snapshot):
    recorder = LoggingEventRecorder(clock)
    event = recorder.event(snapshot, EventType.WARNING, EventReason.RECONCILE_FAILED, "failed")
    assert event.reason == "ReconcileFailed"
