"""Tests for the materialized path codec."""

import pytest

from lineage.core import paths


class TestDepthAndParent:
    """depth / parent_path / child_path."""

    @pytest.mark.parametrize(
        "path,expected",
        [(None, 0), ("", 0), ("1", 1), ("1.2", 2), ("1.2.10", 3)],
    )
    def test_depth(self, path, expected):
        assert paths.depth(path) == expected

    def test_parent_of_root_is_none(self):
        assert paths.parent_path("1") is None
        assert paths.parent_path(None) is None

    def test_parent_drops_last_segment(self):
        assert paths.parent_path("1.4.2") == "1.4"

    def test_child_path(self):
        assert paths.child_path(None, 1) == "1"
        assert paths.child_path("1.4", 12) == "1.4.12"

    def test_child_then_parent(self):
        assert paths.parent_path(paths.child_path("3.1", 7)) == "3.1"
        assert paths.depth(paths.child_path("3.1", 7)) == 3


class TestDescendantOf:
    """Segment-aware ancestry check."""

    def test_equal_paths(self):
        assert paths.is_descendant_of("1.2", "1.2")

    def test_strict_descendant(self):
        assert paths.is_descendant_of("1.2.5.1", "1.2")

    def test_sibling_with_shared_text_prefix(self):
        # "1.10" starts with "1.1" as text but is not below it
        assert not paths.is_descendant_of("1.10", "1.1")
        assert not paths.is_descendant_of("1.10.3", "1.1")

    def test_ancestor_is_not_descendant(self):
        assert not paths.is_descendant_of("1", "1.2")

    def test_empty_inputs(self):
        assert not paths.is_descendant_of(None, "1")
        assert not paths.is_descendant_of("1", None)


class TestHelpers:

    def test_ancestor_paths(self):
        assert paths.ancestor_paths("1.4.2") == ["1", "1.4"]
        assert paths.ancestor_paths("1") == []
        assert paths.ancestor_paths(None) == []

    def test_last_segment(self):
        assert paths.last_segment("1.4.12") == 12
        assert paths.last_segment("3") == 3
        assert paths.last_segment(None) is None

    @pytest.mark.parametrize("path", ["1", "1.2", "12.304.1"])
    def test_valid(self, path):
        assert paths.is_valid(path)

    @pytest.mark.parametrize("path", [None, "", "0", "1.0", "1..2", ".1", "1.", "a.b", "1.-2", "01"])
    def test_invalid(self, path):
        assert not paths.is_valid(path)
