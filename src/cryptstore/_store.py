"""Store — string-path facade over a session, scoped to a root path."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING, Any, BinaryIO

from cryptstore._capabilities import Capability
from cryptstore._errors import InvalidPath, NotFound
from cryptstore._models import Entry
from cryptstore._path import PathType, RemotePath

if TYPE_CHECKING:
    from types import TracebackType

    from cryptstore._models import Attributes, StoredObject
    from cryptstore._session import Session
    from cryptstore._types import WritableContent
    from cryptstore._upload import CancellationToken


class Store:
    """A logical remote folder scoped to a root path.

    All path arguments are validated and prefixed with ``root_path`` before
    being handed to the session's features, so paths inside a registered
    vault are encrypted transparently.

    :param session: The session providing features.
    :param root_path: Path prefix for all operations (may be empty).
    """

    def __init__(self, session: Session, root_path: str = "") -> None:
        self._session = session
        self._root = str(RemotePath(root_path)) if root_path else ""

    def __repr__(self) -> str:
        return f"Store(backend={self._session.backend.name!r}, root_path={self._root!r})"

    def close(self) -> None:
        """Close the underlying session, locking its vaults."""
        self._session.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # region: paths
    def _full_path(self, path: str, kind: PathType = PathType.FILE) -> RemotePath:
        if not path:
            if not self._root:
                raise InvalidPath("Path must not be empty when the store has no root", path=path)
            return RemotePath(self._root, PathType.DIRECTORY)
        validated = RemotePath(path)
        if self._root:
            return RemotePath(f"{self._root}/{validated}", kind)
        return RemotePath(str(validated), kind)

    def _strip_root(self, full: RemotePath) -> RemotePath:
        if not self._root:
            return full
        rel = full.relative_to(RemotePath(self._root))
        if not rel:
            raise InvalidPath(f"Path {full} is the store root", path=str(full))
        return RemotePath("/".join(rel), full.kind)

    # endregion

    def supports(self, capability: Capability) -> bool:
        """Check whether the session can provide a capability."""
        return self._session.supports(capability)

    def _feature(self, cap: Capability) -> Any:
        return self._session.feature(cap)

    def is_file(self, path: str) -> bool:
        return bool(self._feature(Capability.FIND).find(self._full_path(path)))

    def is_folder(self, path: str) -> bool:
        return bool(self._feature(Capability.FIND).find(self._full_path(path, PathType.DIRECTORY)))

    def exists(self, path: str) -> bool:
        """Check if a file or folder exists."""
        return self.is_file(path) or self.is_folder(path)

    def mkdir(self, path: str) -> None:
        """Create a folder.

        :raises AlreadyExists: If the folder exists.
        """
        self._feature(Capability.DIRECTORY).mkdir(self._full_path(path, PathType.DIRECTORY))

    def attributes(self, path: str) -> Attributes:
        """Metadata of a file, or of a folder if no such file exists.

        :raises NotFound: If neither exists.
        """
        finder = self._feature(Capability.ATTRIBUTES)
        try:
            return finder.attributes(self._full_path(path))
        except NotFound:
            return finder.attributes(self._full_path(path, PathType.DIRECTORY))

    def read(self, path: str) -> BinaryIO:
        """Open a file for reading.

        :raises NotFound: If the file does not exist.
        """
        return self._feature(Capability.READ).read(self._full_path(path))

    def read_bytes(self, path: str) -> bytes:
        with self.read(path) as fh:
            return bytes(fh.read())

    def write(
        self, path: str, content: WritableContent, *, length: int | None = None, overwrite: bool = True
    ) -> StoredObject:
        """Write a file.

        :param length: Bytes to take from a stream; defaults to the rest of a seekable stream.
        :raises AlreadyExists: If the file exists and ``overwrite`` is ``False``.
        """
        if length is None:
            length = _remaining(content)
        return self._feature(Capability.WRITE).write(
            self._full_path(path), content, length, overwrite=overwrite
        )

    def upload(
        self,
        path: str,
        stream: BinaryIO,
        *,
        length: int | None = None,
        append: bool = False,
        cancel: CancellationToken | None = None,
    ) -> StoredObject:
        """Upload a large file in segments. See :class:`~cryptstore.SegmentedUpload`."""
        if length is None:
            length = _remaining(stream)
        return self._session.upload(self._full_path(path), stream, length, append=append, cancel=cancel)

    def delete(self, path: str) -> None:
        """Delete a file.

        :raises DeleteFailed: If the file could not be deleted.
        """
        self._feature(Capability.DELETE).delete([self._full_path(path)])

    def delete_folder(self, path: str) -> None:
        """Delete a folder and everything in it.

        :raises DeleteFailed: If the folder could not be deleted.
        """
        self._feature(Capability.DELETE).delete([self._full_path(path, PathType.DIRECTORY)])

    def list(self, path: str = "") -> list[Entry]:
        """Immediate children of a folder, with store-relative paths.

        :raises NotFound: If the folder does not exist.
        """
        entries = self._feature(Capability.LIST).list(self._full_path(path, PathType.DIRECTORY))
        return [Entry(self._strip_root(e.path), e.attributes) for e in entries]

    def _pair(self, src: str, dst: str) -> tuple[RemotePath, RemotePath]:
        kind = PathType.FILE if self.is_file(src) else PathType.DIRECTORY
        return self._full_path(src, kind), self._full_path(dst, kind)

    def move(self, src: str, dst: str, *, overwrite: bool = False) -> None:
        """Move a file or folder.

        :raises NotFound: If ``src`` does not exist.
        :raises Conflict: If ``dst`` exists and ``overwrite`` is ``False``.
        """
        full_src, full_dst = self._pair(src, dst)
        self._feature(Capability.MOVE).move(full_src, full_dst, overwrite=overwrite)

    def copy(self, src: str, dst: str, *, overwrite: bool = False) -> None:
        """Copy a file or folder.

        :raises NotFound: If ``src`` does not exist.
        :raises Conflict: If ``dst`` exists and ``overwrite`` is ``False``.
        """
        full_src, full_dst = self._pair(src, dst)
        self._feature(Capability.COPY).copy(full_src, full_dst, overwrite=overwrite)


def _remaining(content: WritableContent) -> int:
    if isinstance(content, bytes):
        return len(content)
    try:
        position = content.tell()
        end = content.seek(0, os.SEEK_END)
        content.seek(position)
    except (AttributeError, OSError, io.UnsupportedOperation):
        raise ValueError("length is required for non-seekable streams") from None
    return end - position
