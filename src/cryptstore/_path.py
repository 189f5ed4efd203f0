"""RemotePath — immutable, validated, typed path value object."""

from __future__ import annotations

import enum
from typing import Final

from cryptstore._errors import InvalidPath


class PathType(enum.Enum):
    """What a path refers to. Fixed for the lifetime of a path object."""

    FILE = "file"
    DIRECTORY = "directory"
    VOLUME = "volume"


class RemotePath:
    """An immutable, normalized path within a remote store.

    A trailing ``/`` in *raw* marks a directory when *kind* is not given.

    :param raw: The raw path string to normalize and validate.
    :param kind: File, directory or volume (container) root.
    :raises InvalidPath: If the path is malformed or unsafe.
    """

    __slots__ = ("_path", "_kind")
    _path: Final[str]  # type: ignore[misc]
    _kind: Final[PathType]  # type: ignore[misc]

    def __init__(self, raw: str, kind: PathType | None = None) -> None:
        normalized = self._normalize(raw)
        if kind is None:
            kind = PathType.DIRECTORY if raw.replace("\\", "/").endswith("/") else PathType.FILE
        object.__setattr__(self, "_path", normalized)
        object.__setattr__(self, "_kind", kind)

    @staticmethod
    def _normalize(raw: str) -> str:
        if "\0" in raw:
            raise InvalidPath("Path contains null byte", path=raw)
        p = raw.replace("\\", "/")
        parts: list[str] = []
        for segment in p.split("/"):
            if segment == "" or segment == ".":
                continue
            if segment == "..":
                raise InvalidPath("Path contains '..' segment", path=raw)
            parts.append(segment)
        if not parts:
            raise InvalidPath("Path is empty after normalization", path=raw)
        return "/".join(parts)

    @classmethod
    def _trusted(cls, normalized: str, kind: PathType) -> RemotePath:
        p = object.__new__(cls)
        object.__setattr__(p, "_path", normalized)
        object.__setattr__(p, "_kind", kind)
        return p

    @property
    def kind(self) -> PathType:
        return self._kind

    def is_file(self) -> bool:
        return self._kind is PathType.FILE

    def is_directory(self) -> bool:
        """``True`` for directories and volume roots."""
        return self._kind is not PathType.FILE

    @property
    def name(self) -> str:
        """Final component of the path."""
        return self._path.rsplit("/", 1)[-1]

    @property
    def parent(self) -> RemotePath | None:
        """Parent directory, or ``None`` if the path has only one component.

        The parent of a two-component path is the volume root, e.g.
        ``RemotePath("bucket/key").parent`` is ``RemotePath("bucket")`` of
        kind ``VOLUME``.
        """
        if "/" not in self._path:
            return None
        parent_str = self._path.rsplit("/", 1)[0]
        kind = PathType.VOLUME if "/" not in parent_str else PathType.DIRECTORY
        return RemotePath._trusted(parent_str, kind)

    @property
    def parts(self) -> tuple[str, ...]:
        """Tuple of path components."""
        return tuple(self._path.split("/"))

    @property
    def suffix(self) -> str:
        """File extension including the dot, or empty string."""
        name = self.name
        dot = name.rfind(".")
        if dot <= 0:
            return ""
        return name[dot:]

    def child(self, name: str, kind: PathType = PathType.FILE) -> RemotePath:
        """Return the child *name* of this path with the given kind."""
        return RemotePath(f"{self._path}/{name}", kind)

    def with_kind(self, kind: PathType) -> RemotePath:
        """Same location, different kind."""
        return RemotePath._trusted(self._path, kind)

    def is_relative_to(self, other: RemotePath) -> bool:
        """``True`` if this path equals *other* or lies beneath it."""
        return self._path == other._path or self._path.startswith(other._path + "/")

    def relative_to(self, other: RemotePath) -> tuple[str, ...]:
        """Components of this path below *other*.

        :raises InvalidPath: If this path is not beneath *other*.
        """
        if self._path == other._path:
            return ()
        prefix = other._path + "/"
        if not self._path.startswith(prefix):
            raise InvalidPath(f"Path {self._path!r} is not under {other._path!r}", path=self._path)
        return tuple(self._path[len(prefix) :].split("/"))

    def __truediv__(self, other: str) -> RemotePath:
        return RemotePath(f"{self._path}/{other}")

    def __str__(self) -> str:
        return self._path

    def __repr__(self) -> str:
        return f"RemotePath({self._path!r}, {self._kind.name})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RemotePath):
            return self._path == other._path and self._kind is other._kind
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self._path, self._kind))

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError(f"RemotePath is immutable: cannot set '{name}'")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"RemotePath is immutable: cannot delete '{name}'")
