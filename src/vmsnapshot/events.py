"""
Event recording for snapshot operations.

Records the audit trail of significant controller actions (content
created, volume snapshot created, volume snapshot missing) against the
object they concern.
"""
import hashlib
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .clock import Clock, SystemClock
from .cluster.meta import format_time, parse_time
from .cluster.resources import Resource

log = structlog.get_logger(__name__)


class EventType(Enum):
    """Severity of an event."""
    NORMAL = "Normal"
    WARNING = "Warning"


class EventReason(Enum):
    """Machine-readable reasons emitted by the controller."""
    CONTENT_CREATED = "SuccessfulVirtualMachineSnapshotContentCreate"
    VOLUME_SNAPSHOT_CREATED = "SuccessfulVolumeSnapshotCreate"
    VOLUME_SNAPSHOT_MISSING = "VolumeSnapshotMissing"
    RECONCILE_FAILED = "ReconcileFailed"


@dataclass
class RecordedEvent:
    """A single event about one object."""
    kind: str
    namespace: str
    name: str
    uid: str
    event_type: EventType
    reason: str
    message: str
    timestamp: datetime

    event_id: str = field(default_factory=lambda: "")

    def __post_init__(self) -> None:
        if not self.event_id:
            content = f"{format_time(self.timestamp)}{self.kind}{self.namespace}{self.name}{self.reason}{self.message}"
            self.event_id = hashlib.sha256(content.encode()).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "timestamp": format_time(self.timestamp),
            "involved_object": {
                "kind": self.kind,
                "namespace": self.namespace,
                "name": self.name,
                "uid": self.uid,
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordedEvent":
        involved = data.get("involved_object") or {}
        return cls(
            event_id=data.get("event_id", ""),
            kind=involved.get("kind", ""),
            namespace=involved.get("namespace", ""),
            name=involved.get("name", ""),
            uid=involved.get("uid", ""),
            event_type=EventType(data["type"]),
            reason=data["reason"],
            message=data.get("message", ""),
            timestamp=parse_time(data["timestamp"]),
        )


class EventRecorder(ABC):
    """Accepts (object, severity, reason, message)."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def event(self, obj: Resource, event_type: EventType, reason: EventReason, message: str) -> RecordedEvent:
        """Record an event about ``obj``."""
        recorded = RecordedEvent(
            kind=obj.KIND,
            namespace=obj.metadata.namespace,
            name=obj.metadata.name,
            uid=obj.metadata.uid,
            event_type=event_type,
            reason=reason.value,
            message=message,
            timestamp=self.clock.now(),
        )
        self.record(recorded)
        return recorded

    @abstractmethod
    def record(self, event: RecordedEvent) -> None:
        pass


class LoggingEventRecorder(EventRecorder):
    """Emit events through structlog."""

    def record(self, event: RecordedEvent) -> None:
        method = log.warning if event.event_type == EventType.WARNING else log.info
        method(
            "event.recorded",
            reason=event.reason,
            kind=event.kind,
            namespace=event.namespace,
            name=event.name,
            message=event.message,
        )


class MemoryEventRecorder(EventRecorder):
    """Keep events in memory (tests, dry runs)."""

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._lock = threading.Lock()
        self.events: List[RecordedEvent] = []

    def record(self, event: RecordedEvent) -> None:
        with self._lock:
            self.events.append(event)

    def reasons(self) -> List[str]:
        with self._lock:
            return [e.reason for e in self.events]


class AuditEventRecorder(EventRecorder):
    """
    Append events as JSON lines to an audit log.

    Usage:
        recorder = AuditEventRecorder(Path("/var/log/vmsnapshot/audit.log"))
        recorder.event(content, EventType.NORMAL, EventReason.CONTENT_CREATED, "...")
        recorder.query(reason=EventReason.CONTENT_CREATED)
    """

    def __init__(self, log_path: Path, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.log_path = Path(log_path)
        self._lock = threading.Lock()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event: RecordedEvent) -> None:
        with self._lock:
            with open(self.log_path, "a") as f:
                f.write(event.to_json() + "\n")

    def query(
        self,
        reason: Optional[EventReason] = None,
        name: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> List[RecordedEvent]:
        """Read back recorded events with optional filters."""
        results: List[RecordedEvent] = []

        if not self.log_path.exists():
            return results

        with open(self.log_path) as f:
            for line in f:
                if len(results) >= limit:
                    break
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    log.warning("audit.corrupt_line", path=str(self.log_path))
                    continue

                if reason and data.get("reason") != reason.value:
                    continue
                if event_type and data.get("type") != event_type.value:
                    continue
                if name and (data.get("involved_object") or {}).get("name") != name:
                    continue

                results.append(RecordedEvent.from_dict(data))

        return results


class FanOutEventRecorder(EventRecorder):
    """Forward every event to several recorders."""

    def __init__(self, *recorders: EventRecorder, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.recorders = list(recorders)

    def record(self, event: RecordedEvent) -> None:
        for recorder in self.recorders:
            recorder.record(event)
