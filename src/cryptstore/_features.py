"""Per-capability operation contracts.

Each storage backend provides exactly one implementation of every contract
it supports. Decorators (see :mod:`cryptstore._crypto_features`) implement
the same contracts by wrapping another implementation.
"""

from __future__ import annotations

import abc
import logging
from typing import TYPE_CHECKING, BinaryIO

from cryptstore._errors import Conflict, NotFound

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cryptstore._models import Attributes, Entry, StoredObject
    from cryptstore._path import RemotePath
    from cryptstore._types import WritableContent
    from cryptstore._upload import Manifest

log = logging.getLogger(__name__)


class Directory(abc.ABC):
    @abc.abstractmethod
    def mkdir(self, path: RemotePath) -> RemotePath:
        """Create a directory.

        :raises AlreadyExists: If the directory exists.
        """


class Move(abc.ABC):
    @abc.abstractmethod
    def move(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        """Move/rename a file or directory and return the new path.

        :raises NotFound: If ``src`` does not exist.
        :raises Conflict: If ``dst`` exists and ``overwrite`` is ``False``.
        """


class Copy(abc.ABC):
    @abc.abstractmethod
    def copy(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        """Copy a file or directory tree.

        :raises NotFound: If ``src`` does not exist.
        :raises Conflict: If ``dst`` exists and ``overwrite`` is ``False``.
        """


class Delete(abc.ABC):
    @abc.abstractmethod
    def delete(self, paths: Sequence[RemotePath]) -> None:
        """Delete files and directories (directories with their contents).

        Every path is attempted even if an earlier one fails.

        :raises DeleteFailed: Listing every path that could not be deleted.
        """


class Find(abc.ABC):
    @abc.abstractmethod
    def find(self, path: RemotePath) -> bool:
        """Return ``True`` if an entry of the path's kind exists. Never raises ``NotFound``."""


class AttributesFinder(abc.ABC):
    @abc.abstractmethod
    def attributes(self, path: RemotePath) -> Attributes:
        """Get metadata for an entry.

        :raises NotFound: If the entry does not exist.
        """


class Read(abc.ABC):
    @abc.abstractmethod
    def read(self, path: RemotePath) -> BinaryIO:
        """Open a file for reading.

        :raises NotFound: If the file does not exist.
        """


class Write(abc.ABC):
    @abc.abstractmethod
    def write(
        self, path: RemotePath, content: WritableContent, length: int, *, overwrite: bool = True
    ) -> StoredObject:
        """Write *length* bytes of *content* to a file.

        :raises AlreadyExists: If the file exists and ``overwrite`` is ``False``.
        """


class ListService(abc.ABC):
    @abc.abstractmethod
    def list(self, directory: RemotePath) -> list[Entry]:
        """List the immediate children of a directory, ordered by name.

        :raises NotFound: If the directory does not exist.
        """


class LargeObject(abc.ABC):
    @abc.abstractmethod
    def commit_manifest(self, path: RemotePath, manifest: Manifest) -> StoredObject:
        """Create *path* as a single object made of the manifest's segments, in order."""


class CopyThenDeleteMove(Move):
    """Move for backends without a server-side move.

    Not atomic: a failure between the copy and the delete leaves both
    entries in place.
    """

    def __init__(self, copy: Copy, delete: Delete, find: Find) -> None:
        self._copy = copy
        self._delete = delete
        self._find = find

    def move(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        if not self._find.find(src):
            raise NotFound(f"Source not found: {src}", path=str(src))
        if not overwrite and self._find.find(dst):
            raise Conflict(f"Destination already exists: {dst}", path=str(dst))
        log.debug("Emulating move of %s to %s with copy and delete", src, dst)
        moved = self._copy.copy(src, dst, overwrite=overwrite)
        self._delete.delete([src])
        return moved
