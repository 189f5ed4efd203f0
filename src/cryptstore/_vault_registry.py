"""VaultRegistry — which vault, if any, governs a path."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, BinaryIO

from cryptstore._capabilities import Capability
from cryptstore._crypto_features import (
    CryptoAttributes,
    CryptoCopy,
    CryptoDelete,
    CryptoDirectory,
    CryptoFind,
    CryptoList,
    CryptoMove,
    CryptoRead,
    CryptoUpload,
    CryptoWrite,
)
from cryptstore._errors import AlreadyExists, CryptStoreError, DeleteFailed, InvalidPath
from cryptstore._features import AttributesFinder, Copy, Delete, Directory, Find, ListService, Move, Read, Write

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from cryptstore._models import Attributes, Entry, StoredObject
    from cryptstore._path import RemotePath
    from cryptstore._types import WritableContent
    from cryptstore._upload import CancellationToken, SegmentedUpload
    from cryptstore._vault import Vault

log = logging.getLogger(__name__)

_DECORATORS: dict[Capability, type[Any]] = {
    Capability.DIRECTORY: CryptoDirectory,
    Capability.MOVE: CryptoMove,
    Capability.COPY: CryptoCopy,
    Capability.DELETE: CryptoDelete,
    Capability.FIND: CryptoFind,
    Capability.ATTRIBUTES: CryptoAttributes,
    Capability.READ: CryptoRead,
    Capability.WRITE: CryptoWrite,
    Capability.LIST: CryptoList,
}


class VaultRegistry:
    """Maps vault roots to unlocked vaults.

    Lookups are lock-free reads of an immutable snapshot; :meth:`add`,
    :meth:`remove` and :meth:`close` replace the snapshot under a lock.
    """

    def __init__(self) -> None:
        self._vaults: dict[str, Vault] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"VaultRegistry(roots={sorted(self._vaults)!r})"

    def __len__(self) -> int:
        return len(self._vaults)

    def __iter__(self) -> Iterator[Vault]:
        return iter(list(self._vaults.values()))

    def add(self, vault: Vault) -> None:
        """Register *vault*.

        :raises AlreadyExists: If a vault is already registered at the same root.
        """
        key = str(vault.root)
        with self._lock:
            if key in self._vaults:
                raise AlreadyExists(f"A vault is already registered at {key}", path=key)
            self._vaults = {**self._vaults, key: vault}
        log.debug("Registered vault at %s", key)

    def remove(self, vault: Vault) -> None:
        key = str(vault.root)
        with self._lock:
            if self._vaults.get(key) is vault:
                self._vaults = {k: v for k, v in self._vaults.items() if k != key}

    def close(self) -> None:
        """Lock and unregister every vault."""
        with self._lock:
            vaults, self._vaults = self._vaults, {}
        for vault in vaults.values():
            vault.lock()

    def find(self, path: RemotePath) -> Vault | None:
        """The innermost vault whose root is *path* or one of its ancestors."""
        found: Vault | None = None
        for vault in self._vaults.values():
            if vault.contains(path) and (found is None or vault.root.is_relative_to(found.root)):
                found = vault
        return found

    def decorate(self, cap: Capability, delegate: Any, vault: Vault) -> Any:
        return _DECORATORS[cap](delegate, vault)

    def feature(self, cap: Capability, delegate: Any) -> Any:
        """Wrap *delegate* so each call is routed through the governing vault, if any."""
        proxy = _PROXIES.get(cap)
        if proxy is None:
            return delegate
        return proxy(self, cap, delegate)

    def upload(self, delegate: SegmentedUpload) -> RegistryUpload:
        return RegistryUpload(self, delegate)


class _Dispatch:
    def __init__(self, registry: VaultRegistry, cap: Capability, delegate: Any) -> None:
        self._registry = registry
        self._cap = cap
        self._delegate = delegate

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._delegate!r})"

    def _target(self, path: RemotePath) -> Any:
        vault = self._registry.find(path)
        if vault is None:
            return self._delegate
        return self._registry.decorate(self._cap, self._delegate, vault)

    def _pair(self, src: RemotePath, dst: RemotePath) -> Any:
        src_vault = self._registry.find(src)
        dst_vault = self._registry.find(dst)
        if src_vault is not dst_vault:
            raise InvalidPath(f"Cannot move or copy {src} to {dst} across a vault boundary", path=str(dst))
        if src_vault is None:
            return self._delegate
        return self._registry.decorate(self._cap, self._delegate, src_vault)


class _RegistryDirectory(_Dispatch, Directory):
    def mkdir(self, path: RemotePath) -> RemotePath:
        return self._target(path).mkdir(path)  # type: ignore[no-any-return]


class _RegistryMove(_Dispatch, Move):
    def move(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        return self._pair(src, dst).move(src, dst, overwrite=overwrite)  # type: ignore[no-any-return]


class _RegistryCopy(_Dispatch, Copy):
    def copy(self, src: RemotePath, dst: RemotePath, *, overwrite: bool = False) -> RemotePath:
        return self._pair(src, dst).copy(src, dst, overwrite=overwrite)  # type: ignore[no-any-return]


class _RegistryDelete(_Dispatch, Delete):
    def delete(self, paths: Sequence[RemotePath]) -> None:
        groups: dict[int, tuple[Any, list[RemotePath]]] = {}
        for path in paths:
            target = self._registry.find(path)
            group = groups.setdefault(id(target), (target, []))
            group[1].append(path)
        failures: list[tuple[str, CryptStoreError]] = []
        for vault, group_paths in groups.values():
            deleter = self._delegate if vault is None else self._registry.decorate(self._cap, self._delegate, vault)
            try:
                deleter.delete(group_paths)
            except DeleteFailed as exc:
                failures.extend(exc.failures)
        if failures:
            raise DeleteFailed(f"Failed to delete {len(failures)} of {len(paths)} paths", failures=failures)


class _RegistryFind(_Dispatch, Find):
    def find(self, path: RemotePath) -> bool:
        return bool(self._target(path).find(path))


class _RegistryAttributes(_Dispatch, AttributesFinder):
    def attributes(self, path: RemotePath) -> Attributes:
        return self._target(path).attributes(path)  # type: ignore[no-any-return]


class _RegistryRead(_Dispatch, Read):
    def read(self, path: RemotePath) -> BinaryIO:
        return self._target(path).read(path)  # type: ignore[no-any-return]


class _RegistryWrite(_Dispatch, Write):
    def write(
        self, path: RemotePath, content: WritableContent, length: int, *, overwrite: bool = True
    ) -> StoredObject:
        return self._target(path).write(path, content, length, overwrite=overwrite)  # type: ignore[no-any-return]


class _RegistryList(_Dispatch, ListService):
    def list(self, directory: RemotePath) -> list[Entry]:
        return self._target(directory).list(directory)  # type: ignore[no-any-return]


class RegistryUpload:
    """Segmented upload that encrypts when the target is vault-governed."""

    def __init__(self, registry: VaultRegistry, delegate: SegmentedUpload) -> None:
        self._registry = registry
        self._delegate = delegate

    def upload(
        self,
        path: RemotePath,
        stream: BinaryIO,
        length: int,
        *,
        append: bool = False,
        cancel: CancellationToken | None = None,
    ) -> StoredObject:
        vault = self._registry.find(path)
        if vault is None:
            return self._delegate.upload(path, stream, length, append=append, cancel=cancel)
        return CryptoUpload(self._delegate, vault).upload(path, stream, length, append=append, cancel=cancel)


_PROXIES: dict[Capability, type[_Dispatch]] = {
    Capability.DIRECTORY: _RegistryDirectory,
    Capability.MOVE: _RegistryMove,
    Capability.COPY: _RegistryCopy,
    Capability.DELETE: _RegistryDelete,
    Capability.FIND: _RegistryFind,
    Capability.ATTRIBUTES: _RegistryAttributes,
    Capability.READ: _RegistryRead,
    Capability.WRITE: _RegistryWrite,
    Capability.LIST: _RegistryList,
}
