"""Immutable metadata models."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from cryptstore._path import RemotePath


@dataclasses.dataclass(frozen=True)
class Attributes:
    """Immutable snapshot of entry metadata as reported by a backend.

    :param size: Size in bytes (``0`` for directories).
    :param checksum: Optional checksum (e.g. MD5 hex, ETag).
    :param modified_at: Last modification time, if known.
    :param version_id: Backend version identifier, if versioned.
    :param extra: Backend-specific metadata.
    """

    size: int = 0
    checksum: str | None = None
    modified_at: datetime | None = None
    version_id: str | None = None
    extra: dict[str, object] = dataclasses.field(default_factory=dict, compare=False)


@dataclasses.dataclass(frozen=True, eq=False)
class Entry:
    """A listed child: its typed path plus attributes."""

    path: RemotePath
    attributes: Attributes = dataclasses.field(default_factory=Attributes)

    @property
    def name(self) -> str:
        return self.path.name

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Entry):
            return self.path == other.path
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.path)


@dataclasses.dataclass(frozen=True)
class StoredObject:
    """Reply of a committed write.

    :param path: The committed path.
    :param checksum: Checksum reported by the backend (MD5 hex for both
        reference backends), or ``None`` if the backend reports none.
    :param size: Number of bytes stored.
    """

    path: RemotePath
    checksum: str | None = None
    size: int = 0
