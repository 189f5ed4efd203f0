"""S3-compatible object storage backend using s3fs."""

from __future__ import annotations

import io
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from cryptstore._backend import Backend
from cryptstore._capabilities import Capability, CapabilitySet
from cryptstore._errors import (
    AlreadyExists,
    BackendUnavailable,
    CapabilityNotSupported,
    Conflict,
    CryptStoreError,
    DeleteFailed,
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
    Read,
    Write,
)
from cryptstore._models import Attributes, Entry, StoredObject
from cryptstore._path import PathType, RemotePath

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from typing import BinaryIO

    from cryptstore._types import WritableContent
    from cryptstore._upload import Manifest

T = TypeVar("T")

# No server-side rename on S3: moves are copy-then-delete, supplied by the session.
_S3_CAPABILITIES = CapabilitySet.full().without(Capability.MOVE)

# Empty object keeping an otherwise empty prefix listable as a directory.
DIRECTORY_PLACEHOLDER = ".keep"


class S3Backend(Backend, Directory, Copy, Delete, Find, AttributesFinder, Read, Write, ListService, LargeObject):
    """S3-compatible object storage backend using s3fs.

    Paths are keys within *bucket*. Directories are prefixes; :meth:`mkdir`
    writes a placeholder object so that empty directories can be listed.

    :param bucket: S3 bucket name (required, non-empty).
    :param endpoint_url: Custom endpoint URL (e.g. for MinIO).
    :param key: AWS access key ID.
    :param secret: AWS secret access key.
    :param region_name: AWS region name.
    :param client_options: Additional options passed to s3fs.
    """

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        key: str | None = None,
        secret: str | None = None,
        region_name: str | None = None,
        client_options: dict[str, Any] | None = None,
    ) -> None:
        if not bucket or not bucket.strip():
            raise ValueError("bucket must be a non-empty string")
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._key = key
        self._secret = secret
        self._region_name = region_name
        self._client_options = client_options or {}
        self._fs_instance: Any = None

    @property
    def name(self) -> str:
        return "s3"

    @property
    def capabilities(self) -> CapabilitySet:
        return _S3_CAPABILITIES

    # region: lazy filesystem

    @property
    def _fs(self) -> Any:
        if self._fs_instance is None:
            import s3fs  # type: ignore[import-untyped]

            opts: dict[str, Any] = dict(self._client_options)
            if self._endpoint_url is not None:
                opts["endpoint_url"] = self._endpoint_url
            if self._key is not None:
                opts["key"] = self._key
            if self._secret is not None:
                opts["secret"] = self._secret
            if self._region_name is not None:
                client_kwargs: dict[str, Any] = opts.setdefault("client_kwargs", {})
                client_kwargs["region_name"] = self._region_name
            opts.setdefault("anon", False)
            # Vault directories are created and listed in quick succession.
            opts.setdefault("use_listings_cache", False)
            self._fs_instance = s3fs.S3FileSystem(**opts)
        return self._fs_instance

    # endregion

    # region: path helpers

    def _s3_path(self, path: RemotePath) -> str:
        return f"{self._bucket}/{path}"

    def _rel_path(self, s3_path: str) -> str:
        prefix = f"{self._bucket}/"
        s3_path = s3_path.rstrip("/")
        if s3_path.startswith(prefix):
            return s3_path[len(prefix) :]
        return s3_path

    # endregion

    # region: error mapping

    @contextmanager
    def _errors(self, path: RemotePath | str = "") -> Iterator[None]:
        """Map s3fs/botocore exceptions to cryptstore errors."""
        try:
            yield
        except CryptStoreError:
            raise
        except FileNotFoundError:
            raise NotFound(f"Not found: {path}", path=str(path), backend=self.name) from None
        except FileExistsError:
            raise AlreadyExists(f"Already exists: {path}", path=str(path), backend=self.name) from None
        except PermissionError:  # pragma: no cover -- moto doesn't raise PermissionError
            raise PermissionDenied(f"Permission denied: {path}", path=str(path), backend=self.name) from None
        except Exception as exc:  # pragma: no cover -- moto raises standard errors
            raise self._classify_error(exc, str(path)) from None

    def _classify_error(self, exc: Exception, path: str) -> CryptStoreError:  # pragma: no cover
        """Classify an unknown exception into a cryptstore error type."""
        msg = str(exc).lower()
        if "404" in msg or "nosuchkey" in msg or "nosuchbucket" in msg or "not found" in msg:
            return NotFound(f"Not found: {path}", path=path, backend=self.name)
        if "403" in msg or "accessdenied" in msg or "access denied" in msg:
            return PermissionDenied(f"Permission denied: {path}", path=path, backend=self.name)
        if any(kw in msg for kw in ("endpoint", "connect", "timeout", "dns", "name or service", "slowdown", "503")):
            return BackendUnavailable(str(exc), path=path, backend=self.name)
        return CryptStoreError(str(exc), path=path, backend=self.name)

    # endregion

    # region: helpers

    @staticmethod
    def _read_content(content: WritableContent, length: int) -> bytes:
        if isinstance(content, bytes):
            return content[:length]
        buf = bytearray()
        while len(buf) < length:
            block = content.read(length - len(buf))
            if not block:
                break
            buf += block
        return bytes(buf)

    @staticmethod
    def _etag(info: dict[str, Any]) -> str | None:
        etag = info.get("ETag") or info.get("etag")
        return str(etag).strip('"') if etag else None

    def _info_to_attributes(self, info: dict[str, Any]) -> Attributes:
        """Convert an s3fs info dict to Attributes."""
        if info.get("type") == "directory":
            return Attributes(size=0)
        modified = info.get("LastModified", info.get("last_modified"))
        if isinstance(modified, str):
            modified = datetime.fromisoformat(modified)
        if modified is not None and modified.tzinfo is None:
            modified = modified.replace(tzinfo=timezone.utc)
        size = info.get("size", info.get("Size", 0)) or 0
        return Attributes(
            size=int(size),
            checksum=self._etag(info),
            modified_at=modified,
            version_id=info.get("VersionId"),
        )

    def _is_kind(self, path: RemotePath) -> bool:
        s3_path = self._s3_path(path)
        if path.is_file():
            return bool(self._fs.isfile(s3_path))
        return bool(self._fs.isdir(s3_path))

    # endregion

    # region: directory, find and attributes

    def mkdir(self, path: RemotePath) -> RemotePath:
        with self._errors(path):
            s3_path = self._s3_path(path)
            if self._fs.exists(s3_path):
                raise AlreadyExists(f"Directory already exists: {path}", path=str(path), backend=self.name)
            self._fs.pipe_file(f"{s3_path}/{DIRECTORY_PLACEHOLDER}", b"")
        return path

    def find(self, path: RemotePath) -> bool:
        with self._errors(path):
            return self._is_kind(path)

    def attributes(self, path: RemotePath) -> Attributes:
        with self._errors(path):
            if not self._is_kind(path):
                raise NotFound(f"Not found: {path}", path=str(path), backend=self.name)
            if path.is_directory():
                return Attributes(size=0)
            return self._info_to_attributes(self._fs.info(self._s3_path(path)))

    # endregion

    # region: read and write

    def read(self, path: RemotePath) -> BinaryIO:
        with self._errors(path):
            data = self._fs.cat_file(self._s3_path(path))
            return io.BytesIO(data)

    def write(
        self, path: RemotePath, content: WritableContent, length: int, *, overwrite: bool = True
    ) -> StoredObject:
        data = self._read_content(content, length)
        if len(data) != length:
            raise CryptStoreError(
                f"Short write: expected {length} bytes, stream provided {len(data)}",
                path=str(path),
                backend=self.name,
            )
        s3_path = self._s3_path(path)
        with self._errors(path):
            if not overwrite and self._fs.exists(s3_path):
                raise AlreadyExists(f"File already exists: {path}", path=str(path), backend=self.name)
            self._fs.pipe_file(s3_path, data)
            self._fs.invalidate_cache(s3_path)
            info = self._fs.info(s3_path)
        return StoredObject(path=path, checksum=self._etag(info), size=int(info.get("size", len(data))))

    # endregion

    # region: delete

    def delete(self, paths: Sequence[RemotePath]) -> None:
        failures: list[tuple[str, CryptStoreError]] = []
        for path in paths:
            s3_path = self._s3_path(path)
            try:
                with self._errors(path):
                    if self._fs.isfile(s3_path):
                        self._fs.rm_file(s3_path)
                    elif self._fs.isdir(s3_path):
                        self._fs.rm(s3_path, recursive=True)
                    else:
                        raise NotFound(f"Not found: {path}", path=str(path), backend=self.name)
            except CryptStoreError as exc:
                failures.append((str(path), exc))
        if failures:
            raise DeleteFailed(
                f"Failed to delete {len(failures)} of {len(paths)} paths", failures=failures, backend=self.name
            )

    # endregion

    # region: listing

    def list(self, directory: RemotePath) -> list[Entry]:
        s3_path = self._s3_path(directory)
        with self._errors(directory):
            if not self._fs.isdir(s3_path):
                raise NotFound(f"Directory not found: {directory}", path=str(directory), backend=self.name)
            infos: list[dict[str, Any]] = self._fs.ls(s3_path, detail=True, refresh=True)
        entries: list[Entry] = []
        for info in infos:
            rel = self._rel_path(info["name"])
            if rel == str(directory) or rel.rsplit("/", 1)[-1] == DIRECTORY_PLACEHOLDER:
                continue
            kind = PathType.DIRECTORY if info.get("type") == "directory" else PathType.FILE
            entries.append(Entry(path=RemotePath(rel, kind), attributes=self._info_to_attributes(info)))
        return sorted(entries, key=lambda e: e.name)

    # endregion

    # region: copy

    def copy(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        s3_src, s3_dst = self._s3_path(src), self._s3_path(dst)
        with self._errors(src):
            if not self._is_kind(src):
                raise NotFound(f"Source not found: {src}", path=str(src), backend=self.name)
            if self._fs.exists(s3_dst):
                if not overwrite:
                    raise Conflict(f"Destination already exists: {dst}", path=str(dst), backend=self.name)
                self._fs.rm(s3_dst, recursive=True)
            if src.is_file():
                self._fs.copy(s3_src, s3_dst)
            else:
                for key in self._fs.find(s3_src):
                    self._fs.copy(key, s3_dst + key[len(s3_src) :])
        return dst

    # endregion

    # region: large objects

    def commit_manifest(self, path: RemotePath, manifest: Manifest) -> StoredObject:
        """Assemble the segments server-side with a multipart copy.

        Every segment but the last must be at least 5 MiB. Segments stay in
        place.
        """
        s3_path = self._s3_path(path)
        sources = [self._s3_path(segment.path) for segment in manifest.segments]
        with self._errors(path):
            if not sources:
                self._fs.pipe_file(s3_path, b"")
            elif len(sources) == 1:
                self._fs.copy(sources[0], s3_path)
            else:
                self._fs.merge(s3_path, sources)
            self._fs.invalidate_cache(s3_path)
            info = self._fs.info(s3_path)
        size = int(info.get("size", 0))
        if size != manifest.size:
            raise CryptStoreError(
                f"Manifest size {manifest.size} does not match assembled size {size}", path=str(path), backend=self.name
            )
        return StoredObject(path=path, checksum=self._etag(info), size=size)

    # endregion

    # region: lifecycle

    def close(self) -> None:
        if self._fs_instance is not None:
            self._fs_instance.clear_instance_cache()
            self._fs_instance = None

    def unwrap(self, type_hint: type[T]) -> T:
        import s3fs

        if type_hint is s3fs.S3FileSystem:
            return self._fs  # type: ignore[no-any-return]
        raise CapabilityNotSupported(
            f"Backend 's3' does not expose native handle of type {type_hint.__name__}. "
            f"Override unwrap() in your backend to provide native access.",
            capability="unwrap",
            backend=self.name,
        )

    # endregion
