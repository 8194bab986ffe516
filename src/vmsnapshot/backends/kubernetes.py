"""
Kubernetes API backend.

Custom resources (VirtualMachines, snapshots, VolumeSnapshots) go through
``CustomObjectsApi``; pods, claims and storage classes are read through the
typed core and storage APIs. One watch stream per kind feeds both the
in-memory cache and the runner's change handlers.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

import structlog
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from ..clock import Clock
from ..cluster.kinds import Kind
from ..cluster.meta import split_key
from ..cluster.resources import Resource
from ..errors import AlreadyExistsError, ApiError, ConflictError, NotFoundError, VMSnapshotError
from ..events import EventRecorder, RecordedEvent
from ..interfaces.store import ObjectCache, ResourceClient
from .memory import WatchEvent, WatchEventType, WatchHandler

log = structlog.get_logger(__name__)

COMPONENT = "vmsnapshot-controller"


def load_api_client(kubeconfig: Optional[str] = None, in_cluster: Optional[bool] = None) -> k8s_client.ApiClient:
    """Load credentials: in-cluster service account first, then kubeconfig."""
    if in_cluster is not False and kubeconfig is None:
        try:
            k8s_config.load_incluster_config()
            return k8s_client.ApiClient()
        except ConfigException:
            if in_cluster:
                raise
    k8s_config.load_kube_config(config_file=kubeconfig)
    return k8s_client.ApiClient()


def translate_api_exception(exc: ApiException, kind: Kind, key: str, creating: bool = False) -> ApiError:
    """Map an HTTP failure onto the controller's error taxonomy."""
    if exc.status == 404:
        return NotFoundError(kind.kind_name, key)
    if exc.status == 409:
        if creating:
            return AlreadyExistsError(kind.kind_name, key)
        return ConflictError(kind.kind_name, key)
    return ApiError(kind.kind_name, key, f"{kind.kind_name} {key}: {exc.status} {exc.reason}")


class KubernetesClient(ResourceClient):
    """Typed client over the Kubernetes Python client."""

    def __init__(self, api_client: Optional[k8s_client.ApiClient] = None):
        self.api_client = api_client or k8s_client.ApiClient()
        self.custom = k8s_client.CustomObjectsApi(self.api_client)
        self.core = k8s_client.CoreV1Api(self.api_client)
        self.storage = k8s_client.StorageV1Api(self.api_client)

    # -- conversion -------------------------------------------------------

    def to_resource(self, kind: Kind, data: Any) -> Resource:
        if not isinstance(data, dict):
            data = self.api_client.sanitize_for_serialization(data)
        return kind.model.from_dict(data)

    def _items(self, kind: Kind, result: Any) -> List[Resource]:
        if isinstance(result, dict):
            items = result.get("items") or []
        else:
            items = result.items or []
        return [self.to_resource(kind, item) for item in items]

    def _body(self, kind: Kind, obj: Resource) -> Dict[str, Any]:
        body = obj.to_dict()
        if not kind.namespaced:
            body["metadata"].pop("namespace", None)
        return body

    @staticmethod
    def _require_custom(kind: Kind) -> None:
        if not kind.custom:
            raise VMSnapshotError(f"{kind.kind_name} is read-only for this controller")

    # -- reads ------------------------------------------------------------

    def get(self, kind: Kind, namespace: Optional[str], name: str) -> Resource:
        key = f"{namespace}/{name}" if kind.namespaced else name
        try:
            if kind.custom:
                if kind.namespaced:
                    data = self.custom.get_namespaced_custom_object(
                        kind.group, kind.version, namespace, kind.plural, name
                    )
                else:
                    data = self.custom.get_cluster_custom_object(kind.group, kind.version, kind.plural, name)
            elif kind == Kind.POD:
                data = self.core.read_namespaced_pod(name, namespace)
            elif kind == Kind.PERSISTENT_VOLUME_CLAIM:
                data = self.core.read_namespaced_persistent_volume_claim(name, namespace)
            else:
                data = self.storage.read_storage_class(name)
        except ApiException as e:
            raise translate_api_exception(e, kind, key) from e
        return self.to_resource(kind, data)

    def list(self, kind: Kind, namespace: Optional[str] = None) -> List[Resource]:
        try:
            result = self._list_raw(kind, namespace)
        except ApiException as e:
            raise translate_api_exception(e, kind, namespace or "*") from e
        return self._items(kind, result)

    def list_function(self, kind: Kind, namespace: Optional[str] = None) -> Callable[..., Any]:
        """The bound list call for ``kind``, as ``kubernetes.watch`` expects."""
        if kind.custom:
            if kind.namespaced and namespace:
                return lambda **kw: self.custom.list_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, **kw
                )
            return lambda **kw: self.custom.list_cluster_custom_object(
                kind.group, kind.version, kind.plural, **kw
            )
        if kind == Kind.POD:
            if namespace:
                return lambda **kw: self.core.list_namespaced_pod(namespace, **kw)
            return self.core.list_pod_for_all_namespaces
        if kind == Kind.PERSISTENT_VOLUME_CLAIM:
            if namespace:
                return lambda **kw: self.core.list_namespaced_persistent_volume_claim(namespace, **kw)
            return self.core.list_persistent_volume_claim_for_all_namespaces
        return self.storage.list_storage_class

    def _list_raw(self, kind: Kind, namespace: Optional[str]) -> Any:
        return self.list_function(kind, namespace if kind.namespaced else None)()

    # -- writes -----------------------------------------------------------

    def create(self, obj: Resource) -> Resource:
        kind = Kind.for_object(obj)
        self._require_custom(kind)
        try:
            if kind.namespaced:
                data = self.custom.create_namespaced_custom_object(
                    kind.group, kind.version, obj.namespace, kind.plural, self._body(kind, obj)
                )
            else:
                data = self.custom.create_cluster_custom_object(
                    kind.group, kind.version, kind.plural, self._body(kind, obj)
                )
        except ApiException as e:
            raise translate_api_exception(e, kind, obj.key, creating=True) from e
        return self.to_resource(kind, data)

    def update(self, obj: Resource) -> Resource:
        kind = Kind.for_object(obj)
        self._require_custom(kind)
        try:
            if kind.namespaced:
                data = self.custom.replace_namespaced_custom_object(
                    kind.group, kind.version, obj.namespace, kind.plural, obj.name, self._body(kind, obj)
                )
            else:
                data = self.custom.replace_cluster_custom_object(
                    kind.group, kind.version, kind.plural, obj.name, self._body(kind, obj)
                )
        except ApiException as e:
            raise translate_api_exception(e, kind, obj.key) from e
        return self.to_resource(kind, data)

    def update_status(self, obj: Resource) -> Resource:
        kind = Kind.for_object(obj)
        self._require_custom(kind)
        if not kind.status_subresource:
            return self.update(obj)
        try:
            data = self.custom.replace_namespaced_custom_object_status(
                kind.group, kind.version, obj.namespace, kind.plural, obj.name, self._body(kind, obj)
            )
        except ApiException as e:
            raise translate_api_exception(e, kind, obj.key) from e
        return self.to_resource(kind, data)

    def delete(self, kind: Kind, namespace: Optional[str], name: str) -> None:
        self._require_custom(kind)
        key = f"{namespace}/{name}" if kind.namespaced else name
        try:
            if kind.namespaced:
                self.custom.delete_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, name
                )
            else:
                self.custom.delete_cluster_custom_object(kind.group, kind.version, kind.plural, name)
        except ApiException as e:
            raise translate_api_exception(e, kind, key) from e

    def delete_collection(self, kind: Kind, namespace: Optional[str] = None) -> None:
        self._require_custom(kind)
        try:
            if kind.namespaced and namespace:
                self.custom.delete_collection_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural
                )
            else:
                self.custom.delete_collection_cluster_custom_object(kind.group, kind.version, kind.plural)
        except ApiException as e:
            raise translate_api_exception(e, kind, namespace or "*") from e


class KubernetesCache(ObjectCache):
    """Watch-fed object store.

    A kind is served from memory once :meth:`relist` has loaded it; watch
    events passed to :meth:`handle_event` keep it current. Kinds that were
    never listed fall back to live reads.

    Usage:
        cache = KubernetesCache(kube, namespace="default")
        watcher.on_relist(cache.relist)
        watcher.watch(cache.handle_event)
    """

    def __init__(self, kube: KubernetesClient, namespace: Optional[str] = None):
        self.kube = kube
        self.namespace = namespace
        self._lock = threading.Lock()
        self._objects: Dict[Kind, Dict[str, Resource]] = {}

    def relist(self, kind: Kind) -> None:
        """Replace everything held for ``kind`` with a fresh LIST."""
        namespace = self.namespace if kind.namespaced else None
        objects = {obj.key: obj for obj in self.kube.list(kind, namespace)}
        with self._lock:
            self._objects[kind] = objects
        log.debug("cache.relisted", kind=kind.kind_name, count=len(objects))

    def handle_event(self, event: WatchEvent) -> None:
        with self._lock:
            store = self._objects.get(event.kind)
            if store is None:
                return
            if event.type == WatchEventType.DELETED:
                store.pop(event.object.key, None)
            else:
                store[event.object.key] = event.object

    def get_by_key(self, kind: Kind, key: str) -> Optional[Resource]:
        with self._lock:
            store = self._objects.get(kind)
            if store is not None:
                obj = store.get(key)
                return obj.deep_copy() if obj is not None else None

        namespace, name = split_key(key)
        try:
            return self.kube.get(kind, namespace or None, name)
        except NotFoundError:
            return None

    def list(self, kind: Kind, namespace: Optional[str] = None) -> List[Resource]:
        with self._lock:
            store = self._objects.get(kind)
            if store is not None:
                return [
                    obj.deep_copy()
                    for _, obj in sorted(store.items())
                    if namespace is None or obj.metadata.namespace == namespace
                ]
        return self.kube.list(kind, namespace)


class KubernetesWatcher:
    """Feeds watch streams for several kinds into registered handlers.

    Usage:
        watcher = KubernetesWatcher(kube, kinds, namespace="default")
        watcher.on_relist(cache.relist)
        watcher.watch(handler)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        kube: KubernetesClient,
        kinds: List[Kind],
        namespace: Optional[str] = None,
        timeout_seconds: int = 60,
        retry_seconds: float = 5.0,
    ):
        self.kube = kube
        self.kinds = list(kinds)
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.retry_seconds = retry_seconds
        self._handlers: List[WatchHandler] = []
        self._relist_handlers: List[Callable[[Kind], None]] = []
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def watch(self, handler: WatchHandler) -> None:
        self._handlers.append(handler)

    def on_relist(self, handler: Callable[[Kind], None]) -> None:
        """Call ``handler(kind)`` before every stream that starts without a resourceVersion."""
        self._relist_handlers.append(handler)

    def start(self) -> None:
        for kind in self.kinds:
            thread = threading.Thread(
                target=self._run, args=(kind,), name=f"watch-{kind.plural}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop.set()

    def _run(self, kind: Kind) -> None:
        namespace = self.namespace if kind.namespaced else None
        resource_version = None
        while not self._stop.is_set():
            stream = k8s_watch.Watch()
            kwargs: Dict[str, Any] = {"timeout_seconds": self.timeout_seconds}
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                if not resource_version:
                    for relist in self._relist_handlers:
                        relist(kind)
                for raw in stream.stream(self.kube.list_function(kind, namespace), **kwargs):
                    if self._stop.is_set():
                        stream.stop()
                        break
                    event = self._convert(kind, raw)
                    if event is None:
                        continue
                    resource_version = event.object.metadata.resource_version or resource_version
                    self._dispatch(event)
            except ApiException as e:
                if e.status == 410:
                    # history compacted, relist from now
                    resource_version = None
                    continue
                log.warning("watch.failed", kind=kind.kind_name, status=e.status, reason=e.reason)
                self._stop.wait(self.retry_seconds)
            except ApiError as e:
                log.warning("watch.relist_failed", kind=kind.kind_name, error=str(e))
                self._stop.wait(self.retry_seconds)
            except HTTPError as e:
                log.warning("watch.disconnected", kind=kind.kind_name, error=str(e), error_type=type(e).__name__)
                self._stop.wait(self.retry_seconds)

    def _convert(self, kind: Kind, raw: Dict[str, Any]) -> Optional[WatchEvent]:
        try:
            event_type = WatchEventType(raw["type"])
        except ValueError:
            return None
        obj = self.kube.to_resource(kind, raw.get("raw_object") or raw["object"])
        if event_type == WatchEventType.DELETED:
            return WatchEvent(event_type, kind, obj, None)
        return WatchEvent(event_type, kind, None, obj)

    def _dispatch(self, event: WatchEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                log.error(
                    "watch.handler_failed",
                    kind=event.kind.kind_name,
                    key=event.object.key,
                    error=str(e),
                    error_type=type(e).__name__,
                )


class KubernetesEventRecorder(EventRecorder):
    """Publish events as core/v1 Events on the involved object."""

    def __init__(self, kube: KubernetesClient, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.kube = kube

    def record(self, event: RecordedEvent) -> None:
        involved = Kind.for_object_kind(event.kind)
        body = k8s_client.CoreV1Event(
            metadata=k8s_client.V1ObjectMeta(generate_name=f"{event.name}.", namespace=event.namespace),
            involved_object=k8s_client.V1ObjectReference(
                api_version=involved.model.API_VERSION if involved else None,
                kind=event.kind,
                name=event.name,
                namespace=event.namespace,
                uid=event.uid,
            ),
            reason=event.reason,
            message=event.message,
            type=event.event_type.value,
            first_timestamp=event.timestamp,
            last_timestamp=event.timestamp,
            count=1,
            source=k8s_client.V1EventSource(component=COMPONENT),
        )
        try:
            self.kube.core.create_namespaced_event(event.namespace, body)
        except ApiException as e:
            log.warning("event.publish_failed", reason=event.reason, name=event.name, status=e.status)
