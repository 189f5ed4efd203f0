"""Transparent client-side encryption and segmented uploads over remote storage."""

from cryptstore._backend import Backend
from cryptstore._background import KeyMaintenance, MissingKeysProcessor
from cryptstore._capabilities import Capability, CapabilitySet
from cryptstore._config import BackendConfig, SessionConfig, TransferOptions, VaultProfile
from cryptstore._credentials import Credentials, InMemoryPasswordStore, PasswordCallback, PasswordStore
from cryptstore._errors import (
    AlreadyExists,
    BackendUnavailable,
    CapabilityNotSupported,
    ChecksumError,
    Conflict,
    CorruptCiphertext,
    CryptStoreError,
    DeleteFailed,
    InvalidPath,
    LoginCanceled,
    LoginFailure,
    NotFound,
    PermissionDenied,
    TransferCanceled,
    VaultLocked,
)
from cryptstore._keys import KeyExchangeClient
from cryptstore._models import Attributes, Entry, StoredObject
from cryptstore._path import PathType, RemotePath
from cryptstore._session import Session, register_backend
from cryptstore._store import Store
from cryptstore._upload import CancellationToken, Manifest, Segment, SegmentedUpload
from cryptstore._vault import Vault, VaultState

__version__ = "0.1.0"

__all__ = [
    # Core
    "Session",
    "Store",
    "Backend",
    "register_backend",
    # Path & Models
    "RemotePath",
    "PathType",
    "Attributes",
    "Entry",
    "StoredObject",
    # Capabilities
    "Capability",
    "CapabilitySet",
    # Vaults
    "Vault",
    "VaultState",
    # Transfers
    "SegmentedUpload",
    "Segment",
    "Manifest",
    "CancellationToken",
    # Keys & Credentials
    "Credentials",
    "PasswordCallback",
    "PasswordStore",
    "InMemoryPasswordStore",
    "KeyExchangeClient",
    "MissingKeysProcessor",
    "KeyMaintenance",
    # Config
    "BackendConfig",
    "SessionConfig",
    "TransferOptions",
    "VaultProfile",
    # Errors
    "CryptStoreError",
    "NotFound",
    "AlreadyExists",
    "Conflict",
    "PermissionDenied",
    "InvalidPath",
    "CapabilityNotSupported",
    "BackendUnavailable",
    "ChecksumError",
    "CorruptCiphertext",
    "DeleteFailed",
    "TransferCanceled",
    "LoginFailure",
    "LoginCanceled",
    "VaultLocked",
    # Version
    "__version__",
]
