"""Tests for RemotePath normalization, kinds and relations."""

from __future__ import annotations

import pytest

from cryptstore._errors import InvalidPath
from cryptstore._path import PathType, RemotePath


class TestRemotePathImmutability:
    def test_immutable_setattr(self) -> None:
        p = RemotePath("a/b")
        with pytest.raises(AttributeError, match="immutable"):
            p.x = 1  # type: ignore[attr-defined]

    def test_immutable_delattr(self) -> None:
        p = RemotePath("a/b")
        with pytest.raises(AttributeError, match="immutable"):
            del p._path  # type: ignore[misc]


class TestRemotePathNormalization:
    def test_backslash_to_forward_slash(self) -> None:
        assert str(RemotePath("a\\b\\c")) == "a/b/c"

    @pytest.mark.parametrize("raw", ["foo/../bar", "../bar", ".."])
    def test_double_dot_rejected(self, raw: str) -> None:
        with pytest.raises(InvalidPath):
            RemotePath(raw)

    def test_strip_leading_trailing_slashes(self) -> None:
        assert str(RemotePath("/a/b/")) == "a/b"

    def test_collapse_consecutive_slashes(self) -> None:
        assert str(RemotePath("a///b")) == "a/b"

    def test_dot_segment_removal(self) -> None:
        assert str(RemotePath("a/./b")) == "a/b"

    def test_null_byte_rejected(self) -> None:
        with pytest.raises(InvalidPath, match="null"):
            RemotePath("a\0b")

    @pytest.mark.parametrize("raw", ["", "/", ".", "./"])
    def test_empty_rejected(self, raw: str) -> None:
        with pytest.raises(InvalidPath):
            RemotePath(raw)


class TestRemotePathKind:
    def test_default_is_file(self) -> None:
        assert RemotePath("a/b").kind is PathType.FILE
        assert RemotePath("a/b").is_file()

    def test_trailing_slash_means_directory(self) -> None:
        p = RemotePath("a/b/")
        assert p.kind is PathType.DIRECTORY
        assert p.is_directory()

    def test_explicit_kind_wins(self) -> None:
        assert RemotePath("a/b/", PathType.FILE).is_file()

    def test_volume_is_directory(self) -> None:
        assert RemotePath("bucket", PathType.VOLUME).is_directory()

    def test_with_kind(self) -> None:
        p = RemotePath("a/b").with_kind(PathType.DIRECTORY)
        assert str(p) == "a/b"
        assert p.is_directory()

    def test_kind_participates_in_equality(self) -> None:
        assert RemotePath("a/b") != RemotePath("a/b", PathType.DIRECTORY)
        assert RemotePath("a/b") == RemotePath("/a//b")
        assert len({RemotePath("a/b"), RemotePath("a/b"), RemotePath("a/b/")}) == 2


class TestRemotePathProperties:
    def test_name(self) -> None:
        assert RemotePath("a/b/c.txt").name == "c.txt"

    def test_parts(self) -> None:
        assert RemotePath("a/b/c").parts == ("a", "b", "c")

    @pytest.mark.parametrize(("raw", "suffix"), [("f.txt", ".txt"), ("a/f.tar.gz", ".gz"), (".hidden", ""), ("f", "")])
    def test_suffix(self, raw: str, suffix: str) -> None:
        assert RemotePath(raw).suffix == suffix

    def test_parent_of_single_component_is_none(self) -> None:
        assert RemotePath("a").parent is None

    def test_parent_of_two_components_is_volume(self) -> None:
        parent = RemotePath("bucket/key").parent
        assert parent == RemotePath("bucket", PathType.VOLUME)

    def test_parent_of_deeper_path_is_directory(self) -> None:
        parent = RemotePath("a/b/c").parent
        assert parent == RemotePath("a/b", PathType.DIRECTORY)

    def test_child(self) -> None:
        child = RemotePath("a/", PathType.DIRECTORY).child("b", PathType.DIRECTORY)
        assert child == RemotePath("a/b", PathType.DIRECTORY)

    def test_truediv(self) -> None:
        assert RemotePath("a") / "b" == RemotePath("a/b")

    def test_repr(self) -> None:
        assert repr(RemotePath("a/b")) == "RemotePath('a/b', FILE)"


class TestRemotePathRelations:
    def test_is_relative_to_self(self) -> None:
        assert RemotePath("a/b").is_relative_to(RemotePath("a/b/"))

    def test_is_relative_to_ancestor(self) -> None:
        assert RemotePath("a/b/c").is_relative_to(RemotePath("a"))

    def test_sibling_prefix_is_not_relative(self) -> None:
        assert not RemotePath("ab/c").is_relative_to(RemotePath("a"))

    def test_relative_to(self) -> None:
        assert RemotePath("a/b/c").relative_to(RemotePath("a")) == ("b", "c")
        assert RemotePath("a").relative_to(RemotePath("a")) == ()

    def test_relative_to_outside_raises(self) -> None:
        with pytest.raises(InvalidPath):
            RemotePath("x/y").relative_to(RemotePath("a"))
