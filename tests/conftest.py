"""Shared test fixtures and marker registration."""

from __future__ import annotations

import tempfile
from typing import TYPE_CHECKING

import pytest

from cryptstore._credentials import Credentials, PasswordCallback
from cryptstore._path import PathType, RemotePath
from cryptstore._vault import Vault
from cryptstore.backends._local import LocalBackend

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

# Lowest scrypt cost used by tests; the default takes a noticeable fraction of a second.
TEST_SCRYPT_COST = 1 << 10
PASSPHRASE = "correct horse battery staple"


def pytest_configure(config: object) -> None:
    """Register custom markers."""
    if isinstance(config, pytest.Config):
        config.addinivalue_line("markers", "integration: requires external services")
        config.addinivalue_line("markers", "slow: generates large keys or payloads")


class ScriptedCallback(PasswordCallback):
    """Answers prompts from a list; ``None`` entries (or running out) cancel."""

    def __init__(self, answers: list[Credentials | None]) -> None:
        self._answers = list(answers)
        self.prompts: list[tuple[str, str]] = []

    def prompt(self, title: str, reason: str) -> Credentials | None:
        self.prompts.append((title, reason))
        if not self._answers:
            return None
        return self._answers.pop(0)


@pytest.fixture
def passphrase() -> str:
    return PASSPHRASE


@pytest.fixture
def scrypt_cost() -> int:
    return TEST_SCRYPT_COST


@pytest.fixture
def scripted_callback() -> Callable[[list[Credentials | None]], ScriptedCallback]:
    return ScriptedCallback


@pytest.fixture
def local() -> Iterator[LocalBackend]:
    with tempfile.TemporaryDirectory() as tmp:
        yield LocalBackend(root=tmp)


@pytest.fixture
def vault(local: LocalBackend) -> Iterator[Vault]:
    v = Vault.create(local, RemotePath("v", PathType.DIRECTORY), PASSPHRASE, scrypt_cost=TEST_SCRYPT_COST)
    yield v
    v.lock()
