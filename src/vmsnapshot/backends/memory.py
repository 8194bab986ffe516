"""
In-process object store.

Implements both the cache and the client contracts over one dict per kind,
with the API server behaviours the controller relies on: resourceVersion
conflicts, status subresources, soft deletion while finalizers remain,
owner-reference garbage collection and watch notifications.
"""

import copy
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..clock import Clock, SystemClock
from ..cluster.kinds import Kind
from ..cluster.meta import cache_key
from ..cluster.resources import Resource
from ..errors import AlreadyExistsError, ConflictError, NotFoundError
from ..interfaces.store import ObjectCache, ResourceClient

log = structlog.get_logger(__name__)


class WatchEventType(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """A change notification: ``old`` is None for ADDED, ``new`` is None for DELETED."""

    type: WatchEventType
    kind: Kind
    old: Optional[Resource]
    new: Optional[Resource]

    @property
    def object(self) -> Resource:
        return self.new if self.new is not None else self.old


WatchHandler = Callable[[WatchEvent], None]


class InMemoryCluster(ObjectCache, ResourceClient):
    """A single-process stand-in for the API server and its informer caches.

    Usage:
        cluster = InMemoryCluster()
        cluster.watch(lambda event: print(event.type, event.object.key))
        cluster.create(vm)
        vm = cluster.get_by_key(Kind.VIRTUAL_MACHINE, "default/vm1")
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._objects: Dict[Kind, Dict[str, Resource]] = defaultdict(dict)
        self._handlers: List[WatchHandler] = []
        self._lock = threading.RLock()
        self._version = 0
        # every mutating call, for asserting on write traffic
        self.actions: List[Tuple[str, Kind, str]] = []

    def watch(self, handler: WatchHandler) -> None:
        """Register a handler called after every change."""
        with self._lock:
            self._handlers.append(handler)

    # -- cache ------------------------------------------------------------

    def get_by_key(self, kind: Kind, key: str) -> Optional[Resource]:
        with self._lock:
            obj = self._objects[kind].get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def list(self, kind: Kind, namespace: Optional[str] = None) -> List[Resource]:
        with self._lock:
            objects = [
                copy.deepcopy(obj)
                for key, obj in sorted(self._objects[kind].items())
                if namespace is None or obj.metadata.namespace == namespace
            ]
        return objects

    # -- client -----------------------------------------------------------

    def get(self, kind: Kind, namespace: Optional[str], name: str) -> Resource:
        key = cache_key(namespace if kind.namespaced else None, name)
        obj = self.get_by_key(kind, key)
        if obj is None:
            raise NotFoundError(kind.kind_name, key)
        return obj

    def create(self, obj: Resource) -> Resource:
        kind = Kind.for_object(obj)
        events: List[WatchEvent] = []
        with self._lock:
            key = self._key(kind, obj)
            if key in self._objects[kind]:
                raise AlreadyExistsError(kind.kind_name, key)

            stored = copy.deepcopy(obj)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.resource_version = self._next_version()
            stored.metadata.creation_timestamp = self.clock.now()
            stored.metadata.deletion_timestamp = None
            self._objects[kind][key] = stored
            self.actions.append(("create", kind, key))
            events.append(WatchEvent(WatchEventType.ADDED, kind, None, copy.deepcopy(stored)))
            result = copy.deepcopy(stored)

        self._dispatch(events)
        return result

    def update(self, obj: Resource) -> Resource:
        kind = Kind.for_object(obj)
        events: List[WatchEvent] = []
        with self._lock:
            key = self._key(kind, obj)
            current = self._current(kind, key, obj)

            stored = copy.deepcopy(obj)
            # fields the server owns
            stored.metadata.uid = current.metadata.uid
            stored.metadata.creation_timestamp = current.metadata.creation_timestamp
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            if kind.status_subresource:
                for attr in type(obj).STATUS_FIELDS:
                    setattr(stored, attr, copy.deepcopy(getattr(current, attr)))

            self.actions.append(("update", kind, key))
            result = self._store(kind, key, current, stored, events)

        self._dispatch(events)
        return result

    def update_status(self, obj: Resource) -> Resource:
        kind = Kind.for_object(obj)
        events: List[WatchEvent] = []
        with self._lock:
            key = self._key(kind, obj)
            current = self._current(kind, key, obj)

            stored = copy.deepcopy(current)
            for attr in type(obj).STATUS_FIELDS:
                setattr(stored, attr, copy.deepcopy(getattr(obj, attr)))

            self.actions.append(("update_status", kind, key))
            result = self._store(kind, key, current, stored, events)

        self._dispatch(events)
        return result

    def delete(self, kind: Kind, namespace: Optional[str], name: str) -> None:
        events: List[WatchEvent] = []
        with self._lock:
            key = cache_key(namespace if kind.namespaced else None, name)
            self._delete(kind, key, events)

        self._dispatch(events)

    def delete_collection(self, kind: Kind, namespace: Optional[str] = None) -> None:
        events: List[WatchEvent] = []
        with self._lock:
            keys = [
                key
                for key, obj in sorted(self._objects[kind].items())
                if namespace is None or obj.metadata.namespace == namespace
            ]
            for key in keys:
                if key in self._objects[kind]:
                    self._delete(kind, key, events)

        self._dispatch(events)

    # -- internals --------------------------------------------------------

    def _key(self, kind: Kind, obj: Resource) -> str:
        return cache_key(obj.metadata.namespace if kind.namespaced else None, obj.metadata.name)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _current(self, kind: Kind, key: str, obj: Resource) -> Resource:
        current = self._objects[kind].get(key)
        if current is None:
            raise NotFoundError(kind.kind_name, key)
        if obj.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(kind.kind_name, key)
        return current

    def _store(
        self,
        kind: Kind,
        key: str,
        current: Resource,
        stored: Resource,
        events: List[WatchEvent],
    ) -> Resource:
        stored.metadata.resource_version = self._next_version()
        if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
            self._remove(kind, key, events)
            return copy.deepcopy(stored)

        self._objects[kind][key] = stored
        events.append(
            WatchEvent(WatchEventType.MODIFIED, kind, copy.deepcopy(current), copy.deepcopy(stored))
        )
        return copy.deepcopy(stored)

    def _delete(self, kind: Kind, key: str, events: List[WatchEvent]) -> None:
        current = self._objects[kind].get(key)
        if current is None:
            raise NotFoundError(kind.kind_name, key)

        self.actions.append(("delete", kind, key))
        if not current.metadata.finalizers:
            self._remove(kind, key, events)
            return

        if current.metadata.deletion_timestamp is None:
            stored = copy.deepcopy(current)
            stored.metadata.deletion_timestamp = self.clock.now()
            stored.metadata.resource_version = self._next_version()
            self._objects[kind][key] = stored
            events.append(
                WatchEvent(WatchEventType.MODIFIED, kind, copy.deepcopy(current), copy.deepcopy(stored))
            )

    def _remove(self, kind: Kind, key: str, events: List[WatchEvent]) -> None:
        removed = self._objects[kind].pop(key)
        events.append(WatchEvent(WatchEventType.DELETED, kind, copy.deepcopy(removed), None))
        log.debug("memory.removed", kind=kind.kind_name, key=key)
        self._collect_dependents(removed.metadata.uid, events)

    def _collect_dependents(self, owner_uid: str, events: List[WatchEvent]) -> None:
        for kind, objects in list(self._objects.items()):
            for key, obj in list(objects.items()):
                if key not in objects:
                    continue
                if any(ref.uid == owner_uid for ref in obj.metadata.owner_references):
                    self._delete(kind, key, events)

    def _dispatch(self, events: List[WatchEvent]) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for event in events:
            for handler in handlers:
                handler(event)
