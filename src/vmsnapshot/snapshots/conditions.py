"""Condition helpers for snapshot status."""

from datetime import datetime
from typing import List

from .models import Condition, ConditionStatus, ConditionType, SnapshotError, VirtualMachineSnapshot

REASON_SOURCE_LOCKED = "Source locked and operation in progress"
REASON_SOURCE_NOT_LOCKED = "Source not locked"
REASON_SOURCE_MISSING = "Source does not exist"
REASON_NOT_READY = "Not ready"
REASON_IN_ERROR = "In error state"
REASON_ERROR = "Error"
REASON_COMPLETE = "Operation complete"
REASON_UNKNOWN = "Unknown state"
REASON_CANCELLED = "Snapshot cancelled"


def new_progressing_condition(status: ConditionStatus, reason: str, now: datetime) -> Condition:
    return Condition(
        type=ConditionType.PROGRESSING,
        status=status,
        reason=reason,
        last_transition_time=now,
    )


def new_ready_condition(status: ConditionStatus, reason: str, now: datetime) -> Condition:
    return Condition(
        type=ConditionType.READY,
        status=status,
        reason=reason,
        last_transition_time=now,
    )


def new_error(message: str, now: datetime) -> SnapshotError:
    return SnapshotError(message=message, time=now)


def merge_condition(conditions: List[Condition], condition: Condition) -> List[Condition]:
    """Merge ``condition`` into ``conditions`` by type.

    A status change replaces the entry (and its transition time); a
    reason-only change keeps the transition time. Unchanged conditions are
    left untouched so repeated passes do not produce writes.
    """
    merged = list(conditions)
    for i, existing in enumerate(merged):
        if existing.type != condition.type:
            continue
        if existing.status != condition.status:
            merged[i] = condition
        elif existing.reason != condition.reason or existing.message != condition.message:
            merged[i] = Condition(
                type=existing.type,
                status=existing.status,
                reason=condition.reason,
                message=condition.message,
                last_transition_time=existing.last_transition_time,
                last_probe_time=existing.last_probe_time,
            )
        return merged
    merged.append(condition)
    return merged


def set_conditions(
    snapshot: VirtualMachineSnapshot,
    progressing: Condition,
    ready: Condition,
) -> None:
    """Merge a Progressing/Ready pair into the snapshot's status in place."""
    conditions = merge_condition(snapshot.status.conditions, progressing)
    snapshot.status.conditions = merge_condition(conditions, ready)
