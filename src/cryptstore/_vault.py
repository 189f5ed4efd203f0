"""Vault — an encrypted subtree of remote storage.

Every cleartext directory of a vault has an opaque identifier. The root has
the empty identifier; all others are random UUIDs stored in a ``dir.c9r``
marker inside the directory's node. The children of a directory live in its
data directory ``d/XX/YYYY...``, whose location is derived from the
identifier alone, so renaming a directory never relocates its contents.
"""

from __future__ import annotations

import base64
import contextlib
import dataclasses
import enum
import hashlib
import logging
import threading
import uuid
from typing import TYPE_CHECKING

from cryptstore._capabilities import Capability
from cryptstore._cryptor import ContentCryptor, FileNameCryptor, MasterKey
from cryptstore._errors import AlreadyExists, CorruptCiphertext, InvalidPath, NotFound, VaultLocked
from cryptstore._masterkey import (
    DEFAULT_SCRYPT_BLOCK_SIZE,
    DEFAULT_SCRYPT_COST,
    DEFAULT_SHORTENING_THRESHOLD,
    MASTERKEY_FILENAME,
    VAULT_CONFIG_FILENAME,
    create_masterkey_file,
    create_vault_config,
    unlock_masterkey_file,
    vault_config_key_id,
    verify_vault_config,
)
from cryptstore._path import PathType, RemotePath

if TYPE_CHECKING:
    from collections.abc import Iterator

    from cryptstore._backend import Backend

log = logging.getLogger(__name__)

DATA_DIRECTORY = "d"
NODE_SUFFIX = ".c9r"
SHORTENED_SUFFIX = ".c9s"
DIRECTORY_MARKER = "dir.c9r"
CONTENTS_FILE = "contents.c9r"
NAME_FILE = "name.c9s"
ROOT_DIRECTORY_ID = ""


class _DirectoryLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class VaultState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    UNLOCKED = "unlocked"
    LOCKED = "locked"


@dataclasses.dataclass(frozen=True)
class CiphertextNode:
    """Storage locations backing one cleartext path.

    :param cleartext: The cleartext path.
    :param parent_id: Identifier of the cleartext parent directory.
    :param node: Entry in the parent's data directory (``.c9r`` or ``.c9s``).
    :param long_name: Full ciphertext name if the node name was shortened.
    """

    cleartext: RemotePath
    parent_id: str
    node: RemotePath
    long_name: str | None = None

    @property
    def shortened(self) -> bool:
        return self.long_name is not None

    @property
    def content(self) -> RemotePath:
        """Object holding the encrypted file content."""
        if self.shortened:
            return self.node.child(CONTENTS_FILE)
        return self.node.with_kind(PathType.FILE)

    @property
    def marker(self) -> RemotePath:
        """Object holding the directory identifier."""
        return self.node.child(DIRECTORY_MARKER)

    @property
    def long_name_object(self) -> RemotePath | None:
        if self.shortened:
            return self.node.child(NAME_FILE)
        return None


class Vault:
    """An encrypted subtree rooted at *root* on *backend*.

    Use :meth:`create` for a new vault or :meth:`unlock` for an existing one.
    Auxiliary files (markers, name files) are read and written directly
    through the backend.

    :param backend: The storage backend holding the vault.
    :param root: Cleartext and ciphertext location of the vault root.
    """

    def __init__(self, backend: Backend, root: RemotePath) -> None:
        self._backend = backend
        self._root = root.with_kind(root.kind if root.is_directory() else PathType.DIRECTORY)
        self._state = VaultState.UNINITIALIZED
        self._master_key: MasterKey | None = None
        self._names: FileNameCryptor | None = None
        self._content: ContentCryptor | None = None
        self._shortening_threshold = DEFAULT_SHORTENING_THRESHOLD
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()
        self._directory_locks: dict[str, _DirectoryLock] = {}

    def __repr__(self) -> str:
        return f"Vault(root={str(self._root)!r}, state={self._state.value})"

    # region: lifecycle
    @classmethod
    def create(
        cls,
        backend: Backend,
        root: RemotePath,
        passphrase: str,
        *,
        shortening_threshold: int = DEFAULT_SHORTENING_THRESHOLD,
        scrypt_cost: int = DEFAULT_SCRYPT_COST,
        scrypt_block_size: int = DEFAULT_SCRYPT_BLOCK_SIZE,
    ) -> Vault:
        """Write the key files of a new vault at *root* and return it unlocked.

        :raises AlreadyExists: If *root* already holds a vault.
        """
        vault = cls(backend, root)
        if cls.exists(backend, vault.root):
            raise AlreadyExists(f"Vault already exists at {vault.root}", path=str(vault.root), backend=backend.name)
        finder = backend.feature(Capability.FIND)
        if not finder.find(vault.root):
            try:
                backend.feature(Capability.DIRECTORY).mkdir(vault.root)
            except AlreadyExists:
                pass

        master_key = MasterKey.generate()
        masterkey_file = create_masterkey_file(
            master_key, passphrase, scrypt_cost=scrypt_cost, scrypt_block_size=scrypt_block_size
        )
        config = create_vault_config(master_key, shortening_threshold=shortening_threshold)
        writer = backend.feature(Capability.WRITE)
        writer.write(vault.root.child(MASTERKEY_FILENAME), masterkey_file, len(masterkey_file))
        writer.write(vault.root.child(VAULT_CONFIG_FILENAME), config, len(config))

        vault._open(master_key, shortening_threshold)
        vault._mkdir_quietly(vault.data_directory(ROOT_DIRECTORY_ID))
        log.info("Created vault at %s", vault.root)
        return vault

    @staticmethod
    def exists(backend: Backend, root: RemotePath) -> bool:
        """``True`` if *root* holds a vault's master key file."""
        marker = root.with_kind(PathType.DIRECTORY).child(MASTERKEY_FILENAME)
        return bool(backend.feature(Capability.FIND).find(marker))

    def unlock(self, passphrase: str) -> None:
        """Load the key files and derive the master key from *passphrase*.

        :raises NotFound: If there is no vault at the root.
        :raises LoginFailure: If the passphrase is wrong.
        """
        config = self._read_bytes(self._root.child(VAULT_CONFIG_FILENAME))
        kid = vault_config_key_id(config)
        if kid != f"masterkeyfile:{MASTERKEY_FILENAME}":
            raise CorruptCiphertext(f"Unsupported key source {kid!r}", path=str(self._root))
        master_key = unlock_masterkey_file(self._read_bytes(self._root.child(MASTERKEY_FILENAME)), passphrase)
        try:
            claims = verify_vault_config(config, master_key)
        except BaseException:
            master_key.destroy()
            raise
        self._open(master_key, int(claims.get("shorteningThreshold", DEFAULT_SHORTENING_THRESHOLD)))
        log.info("Unlocked vault at %s", self._root)

    def _open(self, master_key: MasterKey, shortening_threshold: int) -> None:
        with self._lock:
            self._master_key = master_key
            self._names = FileNameCryptor(master_key)
            self._content = ContentCryptor(master_key)
            self._shortening_threshold = shortening_threshold
            self._cache = {str(self._root): ROOT_DIRECTORY_ID}
            self._state = VaultState.UNLOCKED

    def lock(self) -> None:
        """Wipe the key material and forget every cached directory identifier."""
        with self._lock:
            if self._master_key is not None:
                self._master_key.destroy()
            self._master_key = None
            self._names = None
            self._content = None
            self._cache.clear()
            self._state = VaultState.LOCKED
        log.info("Locked vault at %s", self._root)

    # endregion

    # region: properties
    @property
    def root(self) -> RemotePath:
        return self._root

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def shortening_threshold(self) -> int:
        return self._shortening_threshold

    @property
    def content_cryptor(self) -> ContentCryptor:
        self._check_unlocked()
        assert self._content is not None  # noqa: S101
        return self._content

    def _name_cryptor(self) -> FileNameCryptor:
        self._check_unlocked()
        assert self._names is not None  # noqa: S101
        return self._names

    def _check_unlocked(self) -> None:
        if self._state is not VaultState.UNLOCKED:
            raise VaultLocked(f"Vault at {self._root} is {self._state.value}", path=str(self._root))

    def contains(self, path: RemotePath) -> bool:
        """``True`` if *path* is the vault root or lies beneath it."""
        return path.is_relative_to(self._root)

    # endregion

    # region: names
    def encrypt_name(self, dir_id: str, name: str) -> str:
        return self._name_cryptor().encrypt(dir_id, name) + NODE_SUFFIX

    def decrypt_name(self, dir_id: str, node_name: str) -> str:
        """Cleartext name of a ``.c9r`` node name.

        :raises CorruptCiphertext: If the name is not a valid node name under *dir_id*.
        """
        if not node_name.endswith(NODE_SUFFIX):
            raise CorruptCiphertext(f"Not an encrypted node name: {node_name!r}")
        return self._name_cryptor().decrypt(dir_id, node_name[: -len(NODE_SUFFIX)])

    @staticmethod
    def shorten(long_name: str) -> str:
        digest = hashlib.sha1(long_name.encode("utf-8")).digest()  # noqa: S324
        return base64.urlsafe_b64encode(digest).decode("ascii") + SHORTENED_SUFFIX

    def data_directory(self, dir_id: str) -> RemotePath:
        """Storage location of the children of the directory with identifier *dir_id*."""
        hashed = self._name_cryptor().hash_directory_id(dir_id)
        return self._root.child(f"{DATA_DIRECTORY}/{hashed[:2]}/{hashed[2:]}", PathType.DIRECTORY)

    def node_for(self, parent_id: str, cleartext: RemotePath) -> CiphertextNode:
        """Locate the node of *cleartext* inside the directory *parent_id*."""
        parent_data = self.data_directory(parent_id)
        encrypted = self.encrypt_name(parent_id, cleartext.name)
        if len(encrypted) > self._shortening_threshold:
            node = parent_data.child(self.shorten(encrypted), PathType.DIRECTORY)
            return CiphertextNode(cleartext, parent_id, node, long_name=encrypted)
        kind = PathType.FILE if cleartext.is_file() else PathType.DIRECTORY
        return CiphertextNode(cleartext, parent_id, parent_data.child(encrypted, kind))

    def encrypt_path(self, path: RemotePath, *, create: bool = False) -> CiphertextNode:
        """Translate a cleartext path below the root to its ciphertext node.

        :param create: Create missing ancestor directories instead of raising.
        :raises NotFound: If an ancestor directory does not exist and *create* is false.
        :raises InvalidPath: If *path* is not strictly beneath the root.
        """
        parent = path.parent
        if parent is None or str(path) == str(self._root) or not self.contains(path):
            raise InvalidPath(f"{path} is not inside vault {self._root}", path=str(path))
        return self.node_for(self.directory_id(parent, create=create), path)

    # endregion

    # region: directory identifiers
    def cached_directory_id(self, path: RemotePath) -> str | None:
        return self._cache.get(str(path))

    def resolve_directory_id(self, path: RemotePath) -> str:
        """Identifier of *path*, creating the directory (and ancestors) if needed."""
        return self.directory_id(path, create=True)

    def directory_id(self, path: RemotePath, *, create: bool = False) -> str:
        """Identifier of the cleartext directory *path*.

        :raises NotFound: If the directory does not exist and *create* is false.
        """
        self._check_unlocked()
        key = str(path)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if not self.contains(path):
            raise InvalidPath(f"{path} is not inside vault {self._root}", path=key)
        node = self.encrypt_path(path.with_kind(PathType.DIRECTORY), create=create)
        with self._directory_lock(key):
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            try:
                dir_id = self._read_marker(node)
            except NotFound:
                if not create:
                    raise NotFound(f"Directory not found: {path}", path=key) from None
                return self._create_directory(node)
            self._remember(key, dir_id)
            return dir_id

    def make_directory(self, path: RemotePath) -> str:
        """Create the cleartext directory *path* and return its new identifier.

        A node left without its marker by an interrupted creation is repaired.

        :raises AlreadyExists: If the directory exists.
        """
        self._check_unlocked()
        key = str(path)
        node = self.encrypt_path(path.with_kind(PathType.DIRECTORY), create=True)
        with self._directory_lock(key):
            try:
                self._read_marker(node)
            except NotFound:
                return self._create_directory(node)
            raise AlreadyExists(f"Directory already exists: {path}", path=key)

    def _create_directory(self, node: CiphertextNode) -> str:
        finder = self._backend.feature(Capability.FIND)
        if finder.find(node.content):
            raise AlreadyExists(f"A file exists at {node.cleartext}", path=str(node.cleartext))
        if finder.find(node.node):
            log.warning("Repairing directory %s with missing marker", node.cleartext)
        else:
            self._mkdir_quietly(node.node)
        if node.shortened:
            self.write_name_file(node)
        dir_id = str(uuid.uuid4())
        self._write_bytes(node.marker, dir_id.encode("utf-8"))
        self._mkdir_quietly(self.data_directory(dir_id))
        self._remember(str(node.cleartext), dir_id)
        log.debug("Created directory %s with id %s", node.cleartext, dir_id)
        return dir_id

    def _remember(self, key: str, dir_id: str) -> None:
        with self._lock:
            self._cache[key] = dir_id

    @contextlib.contextmanager
    def _directory_lock(self, key: str) -> Iterator[None]:
        """Serialize work on one directory. The entry only lives while in use."""
        with self._lock:
            entry = self._directory_locks.get(key)
            if entry is None:
                entry = self._directory_locks[key] = _DirectoryLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if not entry.users and self._directory_locks.get(key) is entry:
                    del self._directory_locks[key]

    def directory_moved(self, src: RemotePath, dst: RemotePath) -> None:
        """Re-key cached identifiers of *src* and its descendants under *dst*."""
        old, new = str(src), str(dst)
        with self._lock:
            for key in [k for k in self._cache if k == old or k.startswith(old + "/")]:
                self._cache[new + key[len(old) :]] = self._cache.pop(key)

    def forget(self, path: RemotePath) -> None:
        """Drop cached identifiers of *path* and its descendants."""
        prefix = str(path)
        with self._lock:
            for key in [k for k in self._cache if k == prefix or k.startswith(prefix + "/")]:
                del self._cache[key]

    # endregion

    # region: auxiliary files
    def write_name_file(self, node: CiphertextNode) -> None:
        """Store the full ciphertext name of a shortened node."""
        if node.long_name is None or node.long_name_object is None:
            return
        self._write_bytes(node.long_name_object, node.long_name.encode("utf-8"))

    def read_name_file(self, node_path: RemotePath) -> str:
        """Full ciphertext name stored in the shortened node *node_path*."""
        return self._read_bytes(node_path.with_kind(PathType.DIRECTORY).child(NAME_FILE)).decode("utf-8")

    def _read_marker(self, node: CiphertextNode) -> str:
        raw = self._read_bytes(node.marker)
        try:
            dir_id = raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            raise CorruptCiphertext(f"Invalid directory marker {node.marker}", path=str(node.marker)) from None
        if not dir_id:
            raise CorruptCiphertext(f"Empty directory marker {node.marker}", path=str(node.marker))
        return dir_id

    def _read_bytes(self, path: RemotePath) -> bytes:
        with self._backend.feature(Capability.READ).read(path) as fh:
            return bytes(fh.read())

    def _write_bytes(self, path: RemotePath, data: bytes) -> None:
        self._backend.feature(Capability.WRITE).write(path, data, len(data))

    def ensure_directory(self, path: RemotePath) -> None:
        self._mkdir_quietly(path)

    def remove(self, paths: list[RemotePath]) -> None:
        self._backend.feature(Capability.DELETE).delete(paths)

    def _mkdir_quietly(self, path: RemotePath) -> None:
        try:
            self._backend.feature(Capability.DIRECTORY).mkdir(path)
        except AlreadyExists:
            pass

    # endregion
