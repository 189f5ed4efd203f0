"""Capability decorators translating cleartext vault paths to ciphertext storage.

Each decorator implements a capability contract of :mod:`cryptstore._features`
by translating its cleartext arguments with a :class:`~cryptstore._vault.Vault`
and delegating to the wrapped implementation of the same contract.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, BinaryIO, Generic, TypeVar

from cryptstore._capabilities import Capability
from cryptstore._cryptor import DecryptingReader, EncryptingReader, ciphertext_size, cleartext_size
from cryptstore._errors import Conflict, CryptStoreError, DeleteFailed, InvalidPath, NotFound
from cryptstore._features import AttributesFinder, Copy, Delete, Directory, Find, ListService, Move, Read, Write
from cryptstore._models import Attributes, Entry, StoredObject
from cryptstore._path import PathType, RemotePath
from cryptstore._vault import NODE_SUFFIX, SHORTENED_SUFFIX, CiphertextNode

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cryptstore._types import WritableContent
    from cryptstore._upload import CancellationToken, SegmentedUpload
    from cryptstore._vault import Vault

log = logging.getLogger(__name__)

F = TypeVar("F")


class CryptoFeature(Generic[F]):
    """Base of all decorators: a wrapped implementation plus the governing vault."""

    def __init__(self, delegate: F, vault: Vault) -> None:
        self._delegate = delegate
        self._vault = vault

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._delegate!r}, {self._vault!r})"

    @property
    def delegate(self) -> F:
        return self._delegate

    @property
    def vault(self) -> Vault:
        return self._vault

    def _is_root(self, path: RemotePath) -> bool:
        return str(path) == str(self._vault.root)

    def _below_root(self, path: RemotePath) -> None:
        if self._is_root(path) or not self._vault.contains(path):
            raise InvalidPath(f"Operation not allowed on vault root or outside vault: {path}", path=str(path))

    def _attributes(self, ciphertext: Attributes, is_file: bool) -> Attributes:
        if not is_file:
            return Attributes(modified_at=ciphertext.modified_at, version_id=ciphertext.version_id)
        return Attributes(
            size=cleartext_size(ciphertext.size),
            modified_at=ciphertext.modified_at,
            version_id=ciphertext.version_id,
            extra=dict(ciphertext.extra),
        )


class CryptoDirectory(CryptoFeature[Directory], Directory):
    def mkdir(self, path: RemotePath) -> RemotePath:
        self._below_root(path)
        self._vault.make_directory(path)
        return path.with_kind(PathType.DIRECTORY) if path.is_file() else path


class CryptoFind(CryptoFeature[Find], Find):
    def find(self, path: RemotePath) -> bool:
        if self._is_root(path):
            return bool(self._delegate.find(path))
        try:
            node = self._vault.encrypt_path(path)
        except NotFound:
            return False
        if path.is_file():
            return bool(self._delegate.find(node.content))
        return bool(self._delegate.find(node.marker))


class CryptoAttributes(CryptoFeature[AttributesFinder], AttributesFinder):
    """Cleartext attributes; sizes are converted and ciphertext checksums dropped."""

    def attributes(self, path: RemotePath) -> Attributes:
        if self._is_root(path):
            return self._attributes(self._delegate.attributes(path), is_file=False)
        node = self._vault.encrypt_path(path)
        if path.is_file():
            return self._attributes(self._delegate.attributes(node.content), is_file=True)
        return self._attributes(self._delegate.attributes(node.node), is_file=False)


class CryptoList(CryptoFeature[ListService], ListService):
    """List a cleartext directory by decrypting the nodes of its data directory."""

    def list(self, directory: RemotePath) -> list[Entry]:
        dir_id = self._vault.directory_id(directory)
        data_directory = self._vault.data_directory(dir_id)
        try:
            listed = self._delegate.list(data_directory)
        except NotFound:
            raise NotFound(f"Directory not found: {directory}", path=str(directory)) from None
        entries = [self._decrypt(directory, dir_id, entry) for entry in listed]
        return sorted((e for e in entries if e is not None), key=lambda e: e.name)

    def _decrypt(self, directory: RemotePath, dir_id: str, entry: Entry) -> Entry | None:
        if entry.name.endswith(NODE_SUFFIX):
            name = self._vault.decrypt_name(dir_id, entry.name)
            if entry.path.is_file():
                return Entry(directory.child(name), self._attributes(entry.attributes, is_file=True))
            return Entry(directory.child(name, PathType.DIRECTORY), self._attributes(entry.attributes, is_file=False))
        if entry.name.endswith(SHORTENED_SUFFIX) and entry.path.is_directory():
            name = self._vault.decrypt_name(dir_id, self._vault.read_name_file(entry.path))
            node = self._vault.node_for(dir_id, directory.child(name))
            finder = self._vault.backend.feature(Capability.FIND)
            if finder.find(node.content):
                attributes = self._vault.backend.feature(Capability.ATTRIBUTES).attributes(node.content)
                return Entry(directory.child(name), self._attributes(attributes, is_file=True))
            return Entry(directory.child(name, PathType.DIRECTORY), self._attributes(entry.attributes, is_file=False))
        log.debug("Skipping %s in %s", entry.name, directory)
        return None


class CryptoRead(CryptoFeature[Read], Read):
    def read(self, path: RemotePath) -> BinaryIO:
        node = self._vault.encrypt_path(path)
        raw = self._delegate.read(node.content)
        try:
            return io.BufferedReader(DecryptingReader(self._vault.content_cryptor, raw))  # type: ignore[return-value]
        except BaseException:
            raw.close()
            raise


class CryptoWrite(CryptoFeature[Write], Write):
    """Encrypt content on the fly; the reply carries the cleartext size and no checksum."""

    def write(
        self, path: RemotePath, content: WritableContent, length: int, *, overwrite: bool = True
    ) -> StoredObject:
        self._below_root(path)
        node = self._vault.encrypt_path(path, create=True)
        prepare_file_node(self._vault, node)
        source = io.BytesIO(content) if isinstance(content, bytes) else content
        encrypted = io.BufferedReader(EncryptingReader(self._vault.content_cryptor, source, length))
        stored = self._delegate.write(node.content, encrypted, ciphertext_size(length), overwrite=overwrite)
        return StoredObject(path=path, checksum=None, size=cleartext_size(stored.size))


def prepare_file_node(vault: Vault, node: CiphertextNode) -> None:
    """Create the wrapper directory and name file of a shortened file node."""
    if node.shortened:
        vault.ensure_directory(node.node)
        vault.write_name_file(node)


class CryptoUpload(CryptoFeature["SegmentedUpload"]):
    """Segmented upload of encrypted content to a vault path.

    Ciphertext differs on every attempt, so existing segments are never reused.
    """

    def upload(
        self,
        path: RemotePath,
        stream: BinaryIO,
        length: int,
        *,
        append: bool = False,
        cancel: CancellationToken | None = None,
    ) -> StoredObject:
        self._below_root(path)
        if append:
            log.warning("Ignoring resume of %s: encrypted uploads always start over", path)
        node = self._vault.encrypt_path(path, create=True)
        prepare_file_node(self._vault, node)
        encrypted = io.BufferedReader(EncryptingReader(self._vault.content_cryptor, stream, length))
        stored = self._delegate.upload(node.content, encrypted, ciphertext_size(length), cancel=cancel)  # type: ignore[arg-type]
        return StoredObject(path=path, checksum=None, size=cleartext_size(stored.size))


class CryptoDelete(CryptoFeature[Delete], Delete):
    """Delete nodes, and for directories the data directories of the whole subtree, in one call."""

    def delete(self, paths: Sequence[RemotePath]) -> None:
        failures: list[tuple[str, CryptStoreError]] = []
        targets: list[RemotePath] = []
        owners: dict[str, str] = {}
        directories: list[RemotePath] = []
        for path in paths:
            try:
                self._below_root(path)
                node = self._vault.encrypt_path(path)
                if path.is_directory():
                    owned = [*self._data_directories(path), node.node]
                    directories.append(path)
                else:
                    owned = [node.node if node.shortened else node.content]
            except CryptStoreError as exc:
                failures.append((str(path), exc))
                continue
            targets.extend(owned)
            owners.update((str(target), str(path)) for target in owned)
        try:
            if targets:
                self._delegate.delete(targets)
        except DeleteFailed as exc:
            # Report each cleartext path once, however many of its ciphertext objects failed.
            reported = {p for p, _ in failures}
            for target, error in exc.failures:
                owner = owners.get(target, target)
                if owner not in reported:
                    reported.add(owner)
                    failures.append((owner, error))
        finally:
            for directory in directories:
                self._vault.forget(directory)
        if failures:
            raise DeleteFailed(f"Failed to delete {len(failures)} of {len(paths)} paths", failures=failures)

    def _data_directories(self, directory: RemotePath) -> list[RemotePath]:
        """Data directories of *directory* and all its subdirectories, deepest first."""
        result: list[RemotePath] = []
        lister = CryptoList(self._vault.backend.feature(Capability.LIST), self._vault)
        for entry in lister.list(directory):
            if entry.path.is_directory():
                result.extend(self._data_directories(entry.path))
        result.append(self._vault.data_directory(self._vault.directory_id(directory)))
        return result


class CryptoMove(CryptoFeature[Move], Move):
    """Move within one vault.

    A file keeps its content, a directory keeps its identifier and data
    directory. Only the node is relocated and renamed.
    """

    def move(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        self._below_root(src)
        self._below_root(dst)
        if src.is_directory() and dst.is_file():
            dst = dst.with_kind(src.kind)
        if src.is_directory():
            self._vault.directory_id(src)
        finder = CryptoFind(self._vault.backend.feature(Capability.FIND), self._vault)
        if not finder.find(src):
            raise NotFound(f"Source not found: {src}", path=str(src))
        if finder.find(dst):
            if not overwrite:
                raise Conflict(f"Destination already exists: {dst}", path=str(dst))
            if dst.is_directory():
                CryptoDelete(self._vault.backend.feature(Capability.DELETE), self._vault).delete([dst])
        src_node = self._vault.encrypt_path(src)
        dst_node = self._vault.encrypt_path(dst, create=True)

        if src_node.shortened == dst_node.shortened:
            self._delegate.move(src_node.node, dst_node.node, overwrite=overwrite)
            self._vault.write_name_file(dst_node)
        else:
            self._move_payload(src_node, dst_node, overwrite=overwrite)

        if src.is_directory():
            self._vault.directory_moved(src, dst)
        log.debug("Moved %s to %s", src, dst)
        return dst

    def _move_payload(self, src: CiphertextNode, dst: CiphertextNode, *, overwrite: bool) -> None:
        """Move between a shortened and a plain node."""
        is_file = src.cleartext.is_file()
        if dst.shortened or not is_file:
            self._vault.ensure_directory(dst.node)
        self._vault.write_name_file(dst)
        if is_file:
            self._delegate.move(src.content, dst.content, overwrite=overwrite)
        else:
            self._delegate.move(src.marker, dst.marker, overwrite=True)
        if src.shortened or not is_file:
            self._vault.remove([src.node])


class CryptoCopy(CryptoFeature[Copy], Copy):
    """Copy within one vault.

    File content is copied as is. Directories are recreated with fresh
    identifiers and their children copied one by one.
    """

    def copy(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        self._below_root(src)
        self._below_root(dst)
        finder = CryptoFind(self._vault.backend.feature(Capability.FIND), self._vault)
        if not finder.find(src):
            raise NotFound(f"Source not found: {src}", path=str(src))
        if finder.find(dst) and not overwrite:
            raise Conflict(f"Destination already exists: {dst}", path=str(dst))
        if src.is_file():
            src_node = self._vault.encrypt_path(src)
            dst_node = self._vault.encrypt_path(dst, create=True)
            prepare_file_node(self._vault, dst_node)
            self._delegate.copy(src_node.content, dst_node.content, overwrite=overwrite)
            return dst
        self._vault.resolve_directory_id(dst)
        lister = CryptoList(self._vault.backend.feature(Capability.LIST), self._vault)
        for entry in lister.list(src):
            self.copy(entry.path, dst.child(entry.name, entry.path.kind), overwrite=overwrite)
        return dst
