"""Storage class -> VolumeSnapshotClass resolution."""

import structlog

from ..cluster.kinds import Kind
from ..errors import SnapshotClassAmbiguousError
from ..interfaces.store import ObjectCache

log = structlog.get_logger(__name__)


def resolve_snapshot_class(cache: ObjectCache, storage_class_name: str) -> str:
    """Pick the VolumeSnapshotClass whose driver provisions ``storage_class_name``.

    Returns "" when the storage class is unknown or no class matches. With
    several matches exactly one must carry the default-class annotation,
    otherwise :class:`SnapshotClassAmbiguousError` is raised.
    """
    storage_class = cache.get_by_key(Kind.STORAGE_CLASS, storage_class_name)
    if storage_class is None:
        log.warning("snapshot_class.storage_class_missing", storage_class=storage_class_name)
        return ""

    matches = sorted(
        (
            c
            for c in cache.list(Kind.VOLUME_SNAPSHOT_CLASS)
            if c.driver == storage_class.provisioner
        ),
        key=lambda c: c.name,
    )

    if not matches:
        log.warning(
            "snapshot_class.no_match",
            storage_class=storage_class_name,
            provisioner=storage_class.provisioner,
        )
        return ""

    if len(matches) == 1:
        return matches[0].name

    defaults = [c for c in matches if c.is_default]
    if len(defaults) == 1:
        return defaults[0].name

    raise SnapshotClassAmbiguousError(storage_class_name, len(matches))
