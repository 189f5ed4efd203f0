"""Session — backend lifecycle, vault registry and capability wiring."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, BinaryIO

from cryptstore._background import KeyMaintenance, MissingKeysProcessor
from cryptstore._capabilities import Capability
from cryptstore._config import SessionConfig, VaultProfile
from cryptstore._errors import LoginCanceled, LoginFailure, NotFound
from cryptstore._features import CopyThenDeleteMove
from cryptstore._path import PathType, RemotePath
from cryptstore._store import Store
from cryptstore._upload import SegmentedUpload
from cryptstore._vault import Vault
from cryptstore._vault_registry import VaultRegistry

if TYPE_CHECKING:
    from types import TracebackType

    from cryptstore._backend import Backend
    from cryptstore._credentials import PasswordCallback, PasswordStore
    from cryptstore._keys import KeyExchangeClient
    from cryptstore._models import StoredObject
    from cryptstore._upload import CancellationToken

log = logging.getLogger(__name__)

# Global backend factory registry: maps type strings to backend classes.
_BACKEND_FACTORIES: dict[str, type[Backend]] = {}


def register_backend(type_name: str, cls: type[Backend]) -> None:
    """Register a backend class for a given type string.

    :param type_name: The type identifier (e.g. ``"local"``).
    :param cls: The backend class to instantiate.
    """
    _BACKEND_FACTORIES[type_name] = cls


def _register_builtin_backends() -> None:
    """Register the built-in backends."""
    from cryptstore.backends._local import LocalBackend

    if "local" not in _BACKEND_FACTORIES:
        register_backend("local", LocalBackend)
    if "s3" not in _BACKEND_FACTORIES:
        try:
            from cryptstore.backends._s3 import S3Backend
        except ImportError:  # pragma: no cover
            return
        register_backend("s3", S3Backend)


def vault_account(root: RemotePath) -> str:
    """Password store account of the passphrase of the vault at *root*."""
    return f"Vault ({root})"


class Session:
    """Entry point: one backend, the vaults on it, and the features to use it.

    Capabilities obtained from :meth:`feature` route every call on a
    vault-governed path through the vault's decorators.

    :param config: Optional configuration. Validates immediately.
    :param backend: An already constructed backend; overrides ``config.backend``.
    :param password_store: Where vault passphrases may be looked up and saved.
    :param password_callback: Prompt used when no passphrase is given or saved.
    :raises ValueError: If config is invalid.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        backend: Backend | None = None,
        password_store: PasswordStore | None = None,
        password_callback: PasswordCallback | None = None,
    ) -> None:
        _register_builtin_backends()
        self._config = config or SessionConfig()
        self._config.validate()
        self._backend = backend
        self._vaults = VaultRegistry()
        self._password_store = password_store
        self._password_callback = password_callback
        self._maintenance: list[KeyMaintenance] = []

    def __repr__(self) -> str:
        backend = self._backend.name if self._backend is not None else self._config.backend.type
        return f"Session(backend={backend!r}, vaults={len(self._vaults)})"

    # region: backend and features
    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def backend(self) -> Backend:
        """The backend, instantiated on first use."""
        if self._backend is None:
            cfg = self._config.backend
            if cfg.type not in _BACKEND_FACTORIES:
                raise ValueError(
                    f"Unknown backend type '{cfg.type}'. Registered types: {sorted(_BACKEND_FACTORIES.keys())}"
                )
            factory = _BACKEND_FACTORIES[cfg.type]
            try:
                self._backend = factory(**cfg.options)
            except TypeError as exc:
                raise ValueError(
                    f"Invalid options for backend (type={cfg.type!r}): {exc}. "
                    f"Provided options: {sorted(cfg.options.keys())}"
                ) from exc
        return self._backend

    @property
    def vaults(self) -> VaultRegistry:
        return self._vaults

    def supports(self, cap: Capability) -> bool:
        """Whether *cap* is available, natively or emulated."""
        caps = self.backend.capabilities
        return caps.supports(cap) or (cap is Capability.MOVE and caps.emulates_move)

    def _plain_feature(self, cap: Capability) -> Any:
        backend = self.backend
        if cap is Capability.MOVE and backend.capabilities.emulates_move:
            return CopyThenDeleteMove(
                backend.feature(Capability.COPY), backend.feature(Capability.DELETE), backend.feature(Capability.FIND)
            )
        return backend.feature(cap)

    def feature(self, cap: Capability) -> Any:
        """Implementation of *cap*, transparently encrypting inside vaults.

        :raises CapabilityNotSupported: If the backend cannot provide *cap*.
        """
        return self._vaults.feature(cap, self._plain_feature(cap))

    def store(self, root_path: str = "") -> Store:
        """A :class:`Store` scoped to *root_path*."""
        return Store(self, root_path)

    # endregion

    # region: vaults
    def _profile(self, root: RemotePath) -> VaultProfile:
        for profile in self._config.vaults.values():
            if profile.root.strip("/") == str(root):
                return profile
        return VaultProfile(root=str(root))

    def create_vault(self, root: str, passphrase: str) -> Vault:
        """Create a vault at *root*, register it and return it unlocked.

        Creation parameters come from the matching profile in the session
        configuration, if any.
        """
        root_path = RemotePath(root, PathType.DIRECTORY)
        profile = self._profile(root_path)
        vault = Vault.create(
            self.backend,
            root_path,
            passphrase,
            shortening_threshold=profile.shortening_threshold,
            scrypt_cost=profile.scrypt_cost,
            scrypt_block_size=profile.scrypt_block_size,
        )
        self._vaults.add(vault)
        return vault

    def unlock_vault(self, root: str, passphrase: str | None = None) -> Vault:
        """Unlock the vault at *root* and register it.

        Without *passphrase*, a saved passphrase is tried first, then the
        password callback is asked until the vault unlocks.

        :raises NotFound: If there is no vault at *root*.
        :raises LoginFailure: If an explicit *passphrase* is wrong.
        :raises LoginCanceled: If the prompt was dismissed or no prompt is available.
        """
        root_path = RemotePath(root, PathType.DIRECTORY)
        if not Vault.exists(self.backend, root_path):
            raise NotFound(f"No vault at {root_path}", path=str(root_path), backend=self.backend.name)
        vault = Vault(self.backend, root_path)
        if passphrase is not None:
            vault.unlock(passphrase)
        else:
            self._unlock_interactively(vault)
        self._vaults.add(vault)
        return vault

    def _unlock_interactively(self, vault: Vault) -> None:
        hostname, account = self.backend.name, vault_account(vault.root)
        if self._password_store is not None:
            saved = self._password_store.get_password(hostname, account)
            if saved is not None:
                try:
                    vault.unlock(saved)
                    return
                except LoginFailure:
                    log.warning("Saved passphrase for vault %s is invalid", vault.root)
        if self._password_callback is None:
            raise LoginCanceled(f"No passphrase available for vault {vault.root}", path=str(vault.root))
        reason = f"Provide your passphrase to unlock the vault {vault.root}."
        while True:
            credentials = self._password_callback.prompt("Unlock Vault", reason)
            if credentials is None:
                raise LoginCanceled("Password prompt cancelled", path=str(vault.root))
            try:
                vault.unlock(credentials.password)
            except LoginFailure:
                reason = f"Invalid passphrase for vault {vault.root}. Try again."
                continue
            if credentials.save and self._password_store is not None:
                self._password_store.add_password(hostname, account, credentials.password)
            return

    def lock_vault(self, root: str) -> None:
        """Lock and unregister the vault at *root*, if registered."""
        key = str(RemotePath(root, PathType.DIRECTORY))
        for vault in self._vaults:
            if str(vault.root) == key:
                self._vaults.remove(vault)
                vault.lock()

    # endregion

    # region: transfers and background work
    def upload(
        self,
        path: RemotePath,
        stream: BinaryIO,
        length: int,
        *,
        append: bool = False,
        cancel: CancellationToken | None = None,
    ) -> StoredObject:
        """Segmented upload of *length* bytes of *stream* to *path*, using the configured transfer options."""
        self.backend.capabilities.require(Capability.WRITE, Capability.LARGE_OBJECT, backend=self.backend.name)
        options = self._config.transfer
        engine = SegmentedUpload(
            self.backend,
            options.segment_size,
            options.concurrency,
            checksum=options.checksum,
            retries=options.retries,
        )
        return self._vaults.upload(engine).upload(path, stream, length, append=append, cancel=cancel)

    def key_maintenance(self, client: KeyExchangeClient, username: str, *, hostname: str | None = None) -> KeyMaintenance:
        """Periodic missing file key provisioning, stopped when the session closes.

        Call :meth:`KeyMaintenance.start` to run it in the background.
        """
        if self._password_store is None or self._password_callback is None:
            raise ValueError("Key maintenance needs a password store and a password callback")
        processor = MissingKeysProcessor(client, self._password_store, hostname or self.backend.name, username)
        maintenance = KeyMaintenance(processor, self._password_callback, self._config.key_maintenance_period)
        self._maintenance.append(maintenance)
        return maintenance

    # endregion

    # region: lifecycle
    def close(self) -> None:
        """Stop background work, lock every vault and close the backend."""
        for maintenance in self._maintenance:
            maintenance.shutdown()
        self._maintenance.clear()
        self._vaults.close()
        if self._backend is not None:
            self._backend.close()

    def __enter__(self) -> Session:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # endregion
