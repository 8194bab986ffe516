"""Tests for VolumeSnapshotClass resolution."""
import pytest

from vmsnapshot.errors import SnapshotClassAmbiguousError
from vmsnapshot.snapshots.classes import resolve_snapshot_class


class TestResolveSnapshotClass:
    def test_unknown_storage_class(self, build, cluster):
        build.snapshot_class()
        assert resolve_snapshot_class(cluster, "missing") == ""

    def test_no_matching_driver(self, build, cluster):
        build.storage_class()
        build.snapshot_class(driver="other.example.com")
        assert resolve_snapshot_class(cluster, "standard") == ""

    def test_single_match(self, build, cluster):
        build.storage_class()
        build.snapshot_class("only")
        build.snapshot_class("unrelated", driver="other.example.com", default=True)
        assert resolve_snapshot_class(cluster, "standard") == "only"

    def test_single_default_wins(self, build, cluster):
        build.storage_class()
        build.snapshot_class("a")
        build.snapshot_class("b", default=True)
        build.snapshot_class("c")
        assert resolve_snapshot_class(cluster, "standard") == "b"

    @pytest.mark.parametrize("defaults", [set(), {"a", "b"}])
    def test_ambiguous(self, build, cluster, defaults):
        build.storage_class()
        for name in ("a", "b"):
            build.snapshot_class(name, default=name in defaults)
        with pytest.raises(SnapshotClassAmbiguousError) as exc:
            resolve_snapshot_class(cluster, "standard")
        assert exc.value.matches == 2
        assert exc.value.storage_class == "standard"
