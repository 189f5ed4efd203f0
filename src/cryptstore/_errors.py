"""Normalized error hierarchy for cryptstore."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from collections.abc import Sequence


class CryptStoreError(Exception):
    """Base class for all cryptstore errors.

    Also serves as the uniform failure type for transport and backend
    errors that have no more specific mapping.

    :param message: Human-readable error description.
    :param path: The path involved in the error, if any.
    :param backend: The backend name involved, if any.
    """

    def __init__(self, message: str = "", *, path: Optional[str] = None, backend: Optional[str] = None) -> None:
        self.path = path
        self.backend = backend
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.path is not None:
            parts.append(f"path={self.path!r}")
        if self.backend is not None:
            parts.append(f"backend={self.backend!r}")
        return " | ".join(parts) if len(parts) > 1 else parts[0]

    def __repr__(self) -> str:
        cls = type(self).__name__
        args = [repr(super().__str__())]
        if self.path is not None:
            args.append(f"path={self.path!r}")
        if self.backend is not None:
            args.append(f"backend={self.backend!r}")
        return f"{cls}({', '.join(args)})"


class NotFound(CryptStoreError):
    """Raised when a file or directory does not exist."""


class AlreadyExists(CryptStoreError):
    """Raised when a target already exists and overwrite is not allowed."""


class Conflict(AlreadyExists):
    """Raised when a move or copy destination is occupied."""


class PermissionDenied(CryptStoreError):
    """Raised when access is denied by the storage backend."""


class InvalidPath(CryptStoreError):
    """Raised for malformed, unsafe, or out-of-scope paths."""


class CapabilityNotSupported(CryptStoreError):
    """Raised when an operation requires an unsupported capability.

    :param capability: The name of the unsupported capability.
    """

    def __init__(
        self,
        message: str = "",
        *,
        path: Optional[str] = None,
        backend: Optional[str] = None,
        capability: str = "",
    ) -> None:
        self.capability = capability
        super().__init__(message, path=path, backend=backend)

    def __str__(self) -> str:
        base = super().__str__()
        if self.capability:
            if base:
                return f"{base} | capability={self.capability!r}"
            return f"capability={self.capability!r}"
        return base


class BackendUnavailable(CryptStoreError):
    """Raised when the backend cannot be reached or initialized."""


class ChecksumError(CryptStoreError):
    """Raised when content integrity verification fails.

    Always fatal to the enclosing transfer.

    :param expected: The locally computed checksum, if known.
    :param actual: The checksum reported by the backend, if known.
    """

    def __init__(
        self,
        message: str = "",
        *,
        path: Optional[str] = None,
        backend: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message, path=path, backend=backend)


class CorruptCiphertext(CryptStoreError):
    """Raised for a malformed or undecryptable ciphertext name or size."""


class DeleteFailed(CryptStoreError):
    """Raised when some paths of a batch delete could not be removed.

    :param failures: ``(path, error)`` pairs for every path that failed.
    """

    def __init__(
        self,
        message: str = "",
        *,
        failures: Sequence[tuple[str, CryptStoreError]] = (),
        backend: Optional[str] = None,
    ) -> None:
        self.failures = list(failures)
        path = self.failures[0][0] if len(self.failures) == 1 else None
        super().__init__(message, path=path, backend=backend)


class TransferCanceled(CryptStoreError):
    """Raised when a transfer was cancelled while waiting for completion."""


class LoginFailure(CryptStoreError):
    """Raised when a passphrase does not unlock the key material."""


class LoginCanceled(CryptStoreError):
    """Raised when the user dismissed a passphrase prompt."""


class VaultLocked(CryptStoreError):
    """Raised when a locked vault is used."""
