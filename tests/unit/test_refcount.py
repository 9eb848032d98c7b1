"""
Unit tests for subpath and secret reference counting.
"""

import pytest

from cfs_controller.provisioner.refcount import should_delete_subpath, should_remove_secret_finalizer

from conftest import make_pv


class TestShouldDeleteSubpath:
    """Tests for should_delete_subpath."""

    @pytest.mark.unit
    def test_no_pattern_always_deletes(self):
        volume = make_pv("pv-1", subpath="shared")
        sibling = make_pv("pv-2", subpath="shared")
        assert should_delete_subpath([volume, sibling], volume, None) is True
        assert should_delete_subpath([volume, sibling], volume, "") is True

    @pytest.mark.unit
    def test_live_sibling_keeps_subpath(self):
        volume = make_pv("pv-1", subpath="shared")
        sibling = make_pv("pv-2", subpath="shared")
        assert should_delete_subpath([volume, sibling], volume, "shared") is False

    @pytest.mark.unit
    def test_deleting_sibling_does_not_count(self):
        volume = make_pv("pv-1", subpath="shared")
        sibling = make_pv("pv-2", subpath="shared", deleting=True)
        assert should_delete_subpath([volume, sibling], volume, "shared") is True

    @pytest.mark.unit
    def test_other_storage_class_does_not_count(self):
        volume = make_pv("pv-1", subpath="shared")
        sibling = make_pv("pv-2", subpath="shared", storage_class="sc-other")
        assert should_delete_subpath([volume, sibling], volume, "shared") is True

    @pytest.mark.unit
    def test_other_subpath_does_not_count(self):
        volume = make_pv("pv-1", subpath="shared")
        sibling = make_pv("pv-2", subpath="elsewhere")
        non_csi = make_pv("pv-3", driver=None)
        assert should_delete_subpath([volume, sibling, non_csi], volume, "shared") is True

    @pytest.mark.unit
    def test_self_only(self):
        volume = make_pv("pv-1", subpath="shared")
        assert should_delete_subpath([volume], volume, "shared") is True


class TestShouldRemoveSecretFinalizer:
    """Tests for should_remove_secret_finalizer."""

    @pytest.mark.unit
    def test_no_secret_ref(self):
        volume = make_pv("pv-1")
        assert should_remove_secret_finalizer([volume], volume) is False

    @pytest.mark.unit
    def test_last_reference(self):
        volume = make_pv("pv-1", publish_secret=("default", "fs-secret"))
        other = make_pv("pv-2", publish_secret=("default", "other-secret"))
        assert should_remove_secret_finalizer([volume, other], volume) is True

    @pytest.mark.unit
    def test_shared_secret(self):
        volume = make_pv("pv-1", publish_secret=("default", "fs-secret"))
        other = make_pv("pv-2", publish_secret=("default", "fs-secret"))
        assert should_remove_secret_finalizer([volume, other], volume) is False

    @pytest.mark.unit
    def test_same_name_other_namespace(self):
        volume = make_pv("pv-1", publish_secret=("default", "fs-secret"))
        other = make_pv("pv-2", publish_secret=("team-b", "fs-secret"))
        dying = make_pv("pv-3", publish_secret=("default", "fs-secret"), deleting=True)
        assert should_remove_secret_finalizer([volume, other, dying], volume) is True
