"""Object metadata shared by every resource kind."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def format_time(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp in the RFC 3339 form the API server uses."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp (or pass a datetime through)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def cache_key(namespace: Optional[str], name: str) -> str:
    """Cache key for an object: ``namespace/name``, or ``name`` if cluster scoped."""
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> Tuple[str, str]:
    """Inverse of :func:`cache_key`."""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return "", key


@dataclass
class OwnerReference:
    """Reference from a dependent object to its owner, for garbage collection."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


@dataclass
class ObjectMeta:
    """Subset of Kubernetes ObjectMeta the controller reads and writes."""

    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    owner_references: List[OwnerReference] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None

    @property
    def key(self) -> str:
        return cache_key(self.namespace, self.name)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.finalizers:
            self.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.finalizers = [f for f in self.finalizers if f != finalizer]

    def controller_owner(self) -> Optional[OwnerReference]:
        """The owner reference flagged as managing controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        if self.namespace:
            data["namespace"] = self.namespace
        if self.uid:
            data["uid"] = self.uid
        if self.resource_version:
            data["resourceVersion"] = self.resource_version
        if self.generation:
            data["generation"] = self.generation
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        if self.finalizers:
            data["finalizers"] = list(self.finalizers)
        if self.owner_references:
            data["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        if self.creation_timestamp:
            data["creationTimestamp"] = format_time(self.creation_timestamp)
        if self.deletion_timestamp:
            data["deletionTimestamp"] = format_time(self.deletion_timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ObjectMeta":
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace") or "",
            uid=data.get("uid") or "",
            resource_version=data.get("resourceVersion") or "",
            generation=int(data.get("generation") or 0),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            finalizers=list(data.get("finalizers") or []),
            owner_references=[
                OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []
            ],
            creation_timestamp=parse_time(data.get("creationTimestamp")),
            deletion_timestamp=parse_time(data.get("deletionTimestamp")),
        )
