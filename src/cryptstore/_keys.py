"""Enterprise key exchange: user key pairs and per-file keys.

File keys are symmetric keys encrypted for one user with RSA-OAEP (SHA-256).
Each user's private key is stored on the server as passphrase-encrypted
PKCS#8 PEM. Holders of a file key can re-encrypt it for other users whose
keys are missing.
"""

from __future__ import annotations

import abc
import base64
import dataclasses
import os
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from cryptstore._errors import CorruptCiphertext, LoginFailure

if TYPE_CHECKING:
    from collections.abc import Sequence

KEY_VERSION = "RSA-4096"
FILE_KEY_SIZE = 32

_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


# region: models
@dataclasses.dataclass(frozen=True)
class UserAccount:
    username: str
    encryption_enabled: bool = False


@dataclasses.dataclass(frozen=True)
class UserPrivateKey:
    pem: str
    version: str = KEY_VERSION


@dataclasses.dataclass(frozen=True)
class UserPublicKey:
    pem: str
    version: str = KEY_VERSION


@dataclasses.dataclass(frozen=True)
class UserKeyPair:
    private_key: UserPrivateKey
    public_key: UserPublicKey


@dataclasses.dataclass(frozen=True)
class FileKey:
    """A plain file key.

    :param key: Raw symmetric key bytes.
    :param iv: Content cipher IV, passed through unchanged.
    :param tag: Content cipher tag, passed through unchanged.
    """

    key: bytes
    iv: str | None = None
    tag: str | None = None
    version: str = "AES-256-GCM"

    def __repr__(self) -> str:
        return f"FileKey(key=<{len(self.key)} bytes>, version={self.version!r})"


@dataclasses.dataclass(frozen=True)
class EncryptedFileKey:
    """A file key encrypted for one user; *key* is base64."""

    key: str
    iv: str | None = None
    tag: str | None = None
    version: str = KEY_VERSION


@dataclasses.dataclass(frozen=True)
class MissingKeyItem:
    user_id: int
    file_id: int


@dataclasses.dataclass(frozen=True)
class MissingKeys:
    """Missing file keys the current user can provide.

    :param items: ``(user, file)`` pairs lacking a key, highest priority first.
    :param users: Public key of every user referenced by *items*.
    :param files: The current user's encrypted key of every referenced file.
    """

    items: Sequence[MissingKeyItem] = ()
    users: dict[int, UserPublicKey] = dataclasses.field(default_factory=dict)
    files: dict[int, EncryptedFileKey] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class UserFileKeySetRequest:
    user_id: int
    file_id: int
    file_key: EncryptedFileKey | None = None


# endregion


class KeyExchangeClient(abc.ABC):
    """Server API of the enterprise key exchange.

    Implementations raise :class:`~cryptstore.CryptStoreError` subclasses for
    API failures.
    """

    @abc.abstractmethod
    def user_account(self) -> UserAccount:
        """Account of the authenticated user."""

    @abc.abstractmethod
    def user_key_pair(self) -> UserKeyPair:
        """Key pair of the authenticated user."""

    @abc.abstractmethod
    def missing_file_keys(self) -> MissingKeys:
        """File keys other users are missing."""

    @abc.abstractmethod
    def set_user_file_keys(self, requests: Sequence[UserFileKeySetRequest]) -> None:
        """Store re-encrypted file keys in one batch."""


# region: crypto
def generate_user_key_pair(password: str, *, key_size: int = 4096) -> UserKeyPair:
    """New RSA key pair with the private key encrypted under *password*."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return UserKeyPair(UserPrivateKey(private_pem.decode("ascii")), UserPublicKey(public_pem.decode("ascii")))


def load_private_key(private_key: UserPrivateKey, password: str) -> rsa.RSAPrivateKey:
    """Decrypt a user's private key.

    :raises LoginFailure: If *password* does not decrypt the key.
    """
    try:
        key = serialization.load_pem_private_key(private_key.pem.encode("ascii"), password=password.encode("utf-8"))
    except (ValueError, TypeError):
        raise LoginFailure("Invalid encryption password") from None
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CorruptCiphertext(f"Unsupported private key type {type(key).__name__}")
    return key


def check_user_key_pair(key_pair: UserKeyPair, password: str | None) -> bool:
    """``True`` if *password* decrypts the private key of *key_pair*."""
    if password is None:
        return False
    try:
        load_private_key(key_pair.private_key, password)
    except LoginFailure:
        return False
    return True


def generate_file_key() -> FileKey:
    return FileKey(os.urandom(FILE_KEY_SIZE))


def encrypt_file_key(file_key: FileKey, public_key: UserPublicKey) -> EncryptedFileKey:
    """Encrypt *file_key* for the owner of *public_key*.

    :raises CorruptCiphertext: If the public key cannot be loaded.
    """
    try:
        key = serialization.load_pem_public_key(public_key.pem.encode("ascii"))
    except (ValueError, TypeError):
        raise CorruptCiphertext("Invalid public key") from None
    if not isinstance(key, rsa.RSAPublicKey):
        raise CorruptCiphertext(f"Unsupported public key type {type(key).__name__}")
    encrypted = key.encrypt(file_key.key, _OAEP)
    return EncryptedFileKey(
        key=base64.b64encode(encrypted).decode("ascii"),
        iv=file_key.iv,
        tag=file_key.tag,
        version=public_key.version,
    )


def decrypt_file_key(encrypted: EncryptedFileKey, private_key: rsa.RSAPrivateKey) -> FileKey:
    """Decrypt a file key with an unlocked private key.

    :raises CorruptCiphertext: If the key was not encrypted for this private key.
    """
    try:
        raw = private_key.decrypt(base64.b64decode(encrypted.key), _OAEP)
    except ValueError:
        raise CorruptCiphertext("Invalid file key") from None
    return FileKey(key=raw, iv=encrypted.iv, tag=encrypted.tag)


# endregion
