"""Interfaces for the object cache and typed client the controller consumes."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..cluster.kinds import Kind
from ..cluster.resources import Resource


class ObjectCache(ABC):
    """Read side: eventually consistent, watch-fed view of the cluster.

    Returned objects are private copies; callers may mutate them freely.
    """

    @abstractmethod
    def get_by_key(self, kind: Kind, key: str) -> Optional[Resource]:
        """Look up ``namespace/name`` (or ``name`` for cluster-scoped kinds)."""
        pass

    @abstractmethod
    def list(self, kind: Kind, namespace: Optional[str] = None) -> List[Resource]:
        """List cached objects of a kind, optionally within one namespace."""
        pass


class ResourceClient(ABC):
    """Write side: typed client against the API server.

    Implementations raise :class:`~vmsnapshot.errors.NotFoundError`,
    :class:`~vmsnapshot.errors.AlreadyExistsError` and
    :class:`~vmsnapshot.errors.ConflictError` for the corresponding outcomes.
    """

    @abstractmethod
    def create(self, obj: Resource) -> Resource:
        """Create an object. Returns the stored object."""
        pass

    @abstractmethod
    def update(self, obj: Resource) -> Resource:
        """Replace an object, guarded by its resourceVersion.

        For kinds with a status subresource the status is not written.
        """
        pass

    @abstractmethod
    def update_status(self, obj: Resource) -> Resource:
        """Replace only the status of an object, guarded by its resourceVersion."""
        pass

    @abstractmethod
    def delete(self, kind: Kind, namespace: Optional[str], name: str) -> None:
        """Request deletion. Objects holding finalizers are only marked."""
        pass

    @abstractmethod
    def get(self, kind: Kind, namespace: Optional[str], name: str) -> Resource:
        """Read an object directly from the API server."""
        pass

    @abstractmethod
    def list(self, kind: Kind, namespace: Optional[str] = None) -> List[Resource]:
        """List objects directly from the API server."""
        pass

    @abstractmethod
    def delete_collection(self, kind: Kind, namespace: Optional[str] = None) -> None:
        """Delete every object of a kind (within a namespace if given)."""
        pass
