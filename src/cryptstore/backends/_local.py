"""Local filesystem backend — stdlib-only reference implementation."""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from cryptstore._backend import Backend
from cryptstore._capabilities import Capability, CapabilitySet
from cryptstore._errors import (
    AlreadyExists,
    Conflict,
    CryptStoreError,
    DeleteFailed,
    InvalidPath,
    NotFound,
    PermissionDenied,
)
from cryptstore._features import (
    AttributesFinder,
    Copy,
    Delete,
    Directory,
    Find,
    LargeObject,
    ListService,
    Move,
    Read,
    Write,
)
from cryptstore._models import Attributes, Entry, StoredObject
from cryptstore._path import PathType, RemotePath

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from cryptstore._types import WritableContent
    from cryptstore._upload import Manifest

_ALL_CAPABILITIES = CapabilitySet.full()

_BUFFER_SIZE = 1024 * 1024


class LocalBackend(
    Backend, Directory, Move, Copy, Delete, Find, AttributesFinder, Read, Write, ListService, LargeObject
):
    """Local filesystem backend using only the Python standard library.

    The first component of a path is treated as the volume (container).

    :param root: Absolute path to the root directory on the local filesystem.
    """

    def __init__(self, root: str) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def name(self) -> str:
        return "local"

    @property
    def capabilities(self) -> CapabilitySet:
        return _ALL_CAPABILITIES

    # region: path safety
    def _resolve(self, path: RemotePath) -> Path:
        """Resolve a relative path to an absolute path within root.

        Safety: ``.resolve()`` follows symlinks to their real target, and
        ``relative_to(self._root)`` then rejects any path that escapes the
        root, including symlinks pointing outside it.

        :raises InvalidPath: If the resolved path escapes the root.
        """
        resolved = (self._root / str(path)).resolve()
        try:
            resolved.relative_to(self._root)
        except ValueError:
            raise InvalidPath(f"Path escapes root directory: {path}", path=str(path), backend=self.name) from None
        return resolved

    def _to_path(self, full: Path) -> RemotePath:
        rel = full.relative_to(self._root).as_posix()
        if full.is_dir():
            return RemotePath(rel, PathType.VOLUME if "/" not in rel else PathType.DIRECTORY)
        return RemotePath(rel, PathType.FILE)

    @contextmanager
    def _errors(self, path: RemotePath) -> Iterator[None]:
        """Map OS exceptions to cryptstore errors."""
        try:
            yield
        except CryptStoreError:
            raise
        except (FileNotFoundError, NotADirectoryError):
            raise NotFound(f"Not found: {path}", path=str(path), backend=self.name) from None
        except FileExistsError:
            raise AlreadyExists(f"Already exists: {path}", path=str(path), backend=self.name) from None
        except PermissionError:
            raise PermissionDenied(f"Permission denied: {path}", path=str(path), backend=self.name) from None
        except OSError as exc:
            raise CryptStoreError(str(exc), path=str(path), backend=self.name) from exc

    # endregion

    # region: helpers
    @staticmethod
    def _md5(full: Path) -> str:
        digest = hashlib.md5()  # noqa: S324
        with full.open("rb") as fh:
            for block in iter(lambda: fh.read(_BUFFER_SIZE), b""):
                digest.update(block)
        return digest.hexdigest()

    def _stat_to_attributes(self, full: Path) -> Attributes:
        st = full.stat()
        modified_at = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        if full.is_dir():
            return Attributes(size=0, modified_at=modified_at)
        return Attributes(size=st.st_size, checksum=self._md5(full), modified_at=modified_at)

    def _exists_as(self, full: Path, path: RemotePath) -> bool:
        if path.is_file():
            return full.is_file()
        return full.is_dir()

    @staticmethod
    def _remove(full: Path) -> None:
        if full.is_dir() and not full.is_symlink():
            shutil.rmtree(str(full))
        else:
            full.unlink()

    def _write_stream(self, path: RemotePath, full: Path, chunks: Iterator[bytes], expected: int) -> tuple[str, int]:
        """Write *chunks* to a temp file next to *full* and rename it into place.

        Nothing is replaced unless exactly *expected* bytes were written.
        """
        full.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.md5()  # noqa: S324
        size = 0
        fd, tmp_path = tempfile.mkstemp(dir=str(full.parent))
        try:
            with os.fdopen(fd, "wb") as fh:
                for block in chunks:
                    digest.update(block)
                    size += len(block)
                    fh.write(block)
            if size != expected:
                raise CryptStoreError(
                    f"Short write: expected {expected} bytes, stream provided {size}", path=str(path), backend=self.name
                )
            os.replace(tmp_path, str(full))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return digest.hexdigest(), size

    @staticmethod
    def _iter_content(content: WritableContent, length: int) -> Iterator[bytes]:
        if isinstance(content, bytes):
            yield content[:length]
            return
        remaining = length
        while remaining > 0:
            block = content.read(min(_BUFFER_SIZE, remaining))
            if not block:
                break
            remaining -= len(block)
            yield block

    # endregion

    # region: directory, find and attributes
    def mkdir(self, path: RemotePath) -> RemotePath:
        full = self._resolve(path)
        with self._errors(path):
            if full.exists():
                raise AlreadyExists(f"Directory already exists: {path}", path=str(path), backend=self.name)
            full.mkdir(parents=True)
        return path

    def find(self, path: RemotePath) -> bool:
        return self._exists_as(self._resolve(path), path)

    def attributes(self, path: RemotePath) -> Attributes:
        full = self._resolve(path)
        if not self._exists_as(full, path):
            raise NotFound(f"Not found: {path}", path=str(path), backend=self.name)
        with self._errors(path):
            return self._stat_to_attributes(full)

    # endregion

    # region: read and write
    def read(self, path: RemotePath) -> BinaryIO:
        full = self._resolve(path)
        if full.is_dir():
            raise NotFound(f"Not a file: {path}", path=str(path), backend=self.name)
        with self._errors(path):
            return full.open("rb")

    def write(
        self, path: RemotePath, content: WritableContent, length: int, *, overwrite: bool = True
    ) -> StoredObject:
        full = self._resolve(path)
        if not overwrite and full.exists():
            raise AlreadyExists(f"File already exists: {path}", path=str(path), backend=self.name)
        with self._errors(path):
            checksum, size = self._write_stream(path, full, self._iter_content(content, length), length)
        return StoredObject(path=path, checksum=checksum, size=size)

    # endregion

    # region: delete
    def delete(self, paths: Sequence[RemotePath]) -> None:
        failures: list[tuple[str, CryptStoreError]] = []
        for path in paths:
            full = self._resolve(path)
            try:
                with self._errors(path):
                    self._remove(full)
            except CryptStoreError as exc:
                failures.append((str(path), exc))
        if failures:
            raise DeleteFailed(f"Failed to delete {len(failures)} of {len(paths)} paths", failures=failures, backend=self.name)

    # endregion

    # region: listing
    def list(self, directory: RemotePath) -> list[Entry]:
        full = self._resolve(directory)
        if not full.is_dir():
            raise NotFound(f"Directory not found: {directory}", path=str(directory), backend=self.name)
        with self._errors(directory):
            return [
                Entry(path=self._to_path(item), attributes=self._stat_to_attributes(item))
                for item in sorted(full.iterdir(), key=lambda p: p.name)
            ]

    # endregion

    # region: move and copy
    def move(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        src_full = self._resolve(src)
        dst_full = self._resolve(dst)
        if not src_full.exists():
            raise NotFound(f"Source not found: {src}", path=str(src), backend=self.name)
        with self._errors(src):
            if dst_full.exists():
                if not overwrite:
                    raise Conflict(f"Destination already exists: {dst}", path=str(dst), backend=self.name)
                if dst_full.is_dir():
                    shutil.rmtree(str(dst_full))
            dst_full.parent.mkdir(parents=True, exist_ok=True)
            os.replace(str(src_full), str(dst_full))
        return dst

    def copy(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        src_full = self._resolve(src)
        dst_full = self._resolve(dst)
        if not src_full.exists():
            raise NotFound(f"Source not found: {src}", path=str(src), backend=self.name)
        with self._errors(src):
            if dst_full.exists():
                if not overwrite:
                    raise Conflict(f"Destination already exists: {dst}", path=str(dst), backend=self.name)
                self._remove(dst_full)
            dst_full.parent.mkdir(parents=True, exist_ok=True)
            if src_full.is_dir():
                shutil.copytree(str(src_full), str(dst_full))
            else:
                shutil.copy2(str(src_full), str(dst_full))
        return dst

    # endregion

    # region: large objects
    def commit_manifest(self, path: RemotePath, manifest: Manifest) -> StoredObject:
        """Concatenate the manifest's segments into *path*.

        Segments stay in place, like the segments of a static large object.
        The returned checksum is the MD5 of the concatenated segment checksums.
        """

        def chunks() -> Iterator[bytes]:
            for segment in manifest.segments:
                with self.read(segment.path) as fh:
                    yield from iter(lambda: fh.read(_BUFFER_SIZE), b"")

        full = self._resolve(path)
        with self._errors(path):
            _, size = self._write_stream(path, full, chunks(), manifest.size)
        return StoredObject(path=path, checksum=manifest.etag(), size=size)

    # endregion
