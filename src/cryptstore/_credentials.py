"""Passphrase prompting and storage contracts."""

from __future__ import annotations

import abc
import dataclasses
import threading
from typing import Optional


@dataclasses.dataclass(frozen=True)
class Credentials:
    """Answer of a passphrase prompt.

    :param password: The entered passphrase.
    :param save: Whether the user asked for the passphrase to be remembered.
    """

    password: str
    save: bool = False

    def __repr__(self) -> str:
        return f"Credentials(password='***', save={self.save!r})"


class PasswordCallback(abc.ABC):
    """Interactive passphrase prompt supplied by the application."""

    @abc.abstractmethod
    def prompt(self, title: str, reason: str) -> Optional[Credentials]:
        """Ask for a passphrase. Return ``None`` if the user cancelled."""


class PasswordStore(abc.ABC):
    """Persistent passphrase storage keyed by host and account."""

    @abc.abstractmethod
    def get_password(self, hostname: str, account: str) -> Optional[str]:
        """Return the saved passphrase or ``None``."""

    @abc.abstractmethod
    def add_password(self, hostname: str, account: str, password: str) -> None:
        """Save or replace a passphrase."""

    @abc.abstractmethod
    def delete_password(self, hostname: str, account: str) -> None:
        """Forget a passphrase. No error if none is saved."""


class InMemoryPasswordStore(PasswordStore):
    """Process-local store, for tests and for applications without a keychain."""

    def __init__(self) -> None:
        self._passwords: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def get_password(self, hostname: str, account: str) -> Optional[str]:
        return self._passwords.get((hostname, account))

    def add_password(self, hostname: str, account: str, password: str) -> None:
        with self._lock:
            self._passwords[(hostname, account)] = password

    def delete_password(self, hostname: str, account: str) -> None:
        with self._lock:
            self._passwords.pop((hostname, account), None)
