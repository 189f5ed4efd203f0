"""Tests for missing file key provisioning and its periodic runner."""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

import pytest

from cryptstore._background import KeyMaintenance, MissingKeysProcessor, passphrase_account
from cryptstore._credentials import Credentials, InMemoryPasswordStore
from cryptstore._errors import BackendUnavailable
from cryptstore._keys import (
    KeyExchangeClient,
    MissingKeyItem,
    MissingKeys,
    UserAccount,
    UserFileKeySetRequest,
    UserKeyPair,
    decrypt_file_key,
    encrypt_file_key,
    generate_file_key,
    generate_user_key_pair,
    load_private_key,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

HOST = "storage.example.com"
USER = "alice"
PASSWORD = "alice-secret"


@pytest.fixture(scope="module")
def alice() -> UserKeyPair:
    return generate_user_key_pair(PASSWORD, key_size=2048)


@pytest.fixture(scope="module")
def bob() -> UserKeyPair:
    return generate_user_key_pair("bob-secret", key_size=2048)


class FakeClient(KeyExchangeClient):
    def __init__(self, key_pair: UserKeyPair, missing: MissingKeys, *, enabled: bool = True) -> None:
        self.key_pair = key_pair
        self.missing = missing
        self.enabled = enabled
        self.uploaded: list[UserFileKeySetRequest] = []
        self.calls = 0
        self.fail_with: Exception | None = None
        self.gate: threading.Event | None = None

    def user_account(self) -> UserAccount:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        return UserAccount(USER, encryption_enabled=self.enabled)

    def user_key_pair(self) -> UserKeyPair:
        return self.key_pair

    def missing_file_keys(self) -> MissingKeys:
        return self.missing

    def set_user_file_keys(self, requests: Sequence[UserFileKeySetRequest]) -> None:
        self.uploaded.extend(requests)


@pytest.fixture
def missing(alice: UserKeyPair, bob: UserKeyPair) -> MissingKeys:
    shared = generate_file_key()
    return MissingKeys(
        items=[MissingKeyItem(user_id=2, file_id=10), MissingKeyItem(user_id=3, file_id=11)],
        users={2: bob.public_key},
        files={10: encrypt_file_key(shared, alice.public_key), 11: encrypt_file_key(shared, alice.public_key)},
    )


@pytest.fixture
def client(alice: UserKeyPair, missing: MissingKeys) -> FakeClient:
    return FakeClient(alice, missing)


@pytest.fixture
def store() -> InMemoryPasswordStore:
    return InMemoryPasswordStore()


def _processor(client: FakeClient, store: InMemoryPasswordStore) -> MissingKeysProcessor:
    return MissingKeysProcessor(client, store, HOST, USER)


class TestMissingKeysProcessor:
    def test_account_name(self) -> None:
        assert passphrase_account("alice") == "Triple-Crypt (alice)"

    def test_encryption_disabled(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        client.enabled = False
        callback = scripted_callback([])
        assert _processor(client, store).process(callback) == []  # type: ignore[arg-type]
        assert callback.prompts == []  # type: ignore[attr-defined]

    def test_saved_password_used(
        self,
        client: FakeClient,
        store: InMemoryPasswordStore,
        bob: UserKeyPair,
        scripted_callback: Callable[..., object],
    ) -> None:
        store.add_password(HOST, passphrase_account(USER), PASSWORD)
        callback = scripted_callback([])
        processed = _processor(client, store).process(callback)  # type: ignore[arg-type]
        assert callback.prompts == []  # type: ignore[attr-defined]
        assert [(r.user_id, r.file_id) for r in processed] == [(2, 10), (3, 11)]
        assert len(client.uploaded) == 1
        request = client.uploaded[0]
        assert request.file_key is not None
        recovered = decrypt_file_key(request.file_key, load_private_key(bob.private_key, "bob-secret"))
        assert len(recovered.key) == 32

    def test_item_without_public_key_is_not_uploaded(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        store.add_password(HOST, passphrase_account(USER), PASSWORD)
        processed = _processor(client, store).process(scripted_callback([]))  # type: ignore[arg-type]
        assert processed[1].file_key is None
        assert [r.user_id for r in client.uploaded] == [2]

    def test_prompts_until_valid(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        callback = scripted_callback([Credentials("wrong"), Credentials(PASSWORD)])
        processed = _processor(client, store).process(callback)  # type: ignore[arg-type]
        assert len(callback.prompts) == 2  # type: ignore[attr-defined]
        assert len(processed) == 2
        assert store.get_password(HOST, passphrase_account(USER)) is None

    def test_invalid_saved_password_prompts(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        store.add_password(HOST, passphrase_account(USER), "stale")
        callback = scripted_callback([Credentials(PASSWORD, save=True)])
        _processor(client, store).process(callback)  # type: ignore[arg-type]
        assert store.get_password(HOST, passphrase_account(USER)) == PASSWORD

    def test_cancelled_prompt(
        self,
        client: FakeClient,
        store: InMemoryPasswordStore,
        scripted_callback: Callable[..., object],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="cryptstore._background"):
            processed = _processor(client, store).process(scripted_callback([None]))  # type: ignore[arg-type]
        assert processed == []
        assert client.uploaded == []
        assert "cancelled" in caplog.text

    def test_api_failure_is_logged(
        self,
        client: FakeClient,
        store: InMemoryPasswordStore,
        scripted_callback: Callable[..., object],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        client.fail_with = BackendUnavailable("service down")
        with caplog.at_level(logging.WARNING, logger="cryptstore._background"):
            assert _processor(client, store).process(scripted_callback([])) == []  # type: ignore[arg-type]
        assert "service down" in caplog.text

    def test_nothing_missing(
        self, alice: UserKeyPair, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        client = FakeClient(alice, MissingKeys())
        store.add_password(HOST, passphrase_account(USER), PASSWORD)
        assert _processor(client, store).process(scripted_callback([])) == []  # type: ignore[arg-type]
        assert client.uploaded == []


class TestKeyMaintenance:
    def test_invalid_period(self, client: FakeClient, store: InMemoryPasswordStore) -> None:
        with pytest.raises(ValueError):
            KeyMaintenance(_processor(client, store), None, period=0)  # type: ignore[arg-type]

    def test_run_once(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        store.add_password(HOST, passphrase_account(USER), PASSWORD)
        maintenance = KeyMaintenance(_processor(client, store), scripted_callback([]))  # type: ignore[arg-type]
        result = maintenance.run_once()
        assert result is not None
        assert len(result) == 2

    def test_run_skipped_while_in_flight(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        client.enabled = False
        client.gate = threading.Event()
        maintenance = KeyMaintenance(_processor(client, store), scripted_callback([]))  # type: ignore[arg-type]
        first = threading.Thread(target=maintenance.run_once)
        first.start()
        try:
            for _ in range(100):
                if client.calls:
                    break
                time.sleep(0.01)
            assert maintenance.run_once() is None
        finally:
            client.gate.set()
            first.join(5)
        assert client.calls == 1

    def test_start_and_shutdown(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        client.enabled = False
        maintenance = KeyMaintenance(_processor(client, store), scripted_callback([]), period=0.01)  # type: ignore[arg-type]
        thread = maintenance.start()
        assert maintenance.start() is thread
        for _ in range(200):
            if client.calls >= 2:
                break
            time.sleep(0.01)
        maintenance.shutdown(timeout=5)
        assert maintenance.is_shutdown
        assert not thread.is_alive()
        assert client.calls >= 2

    def test_transport_error_does_not_stop_schedule(
        self,
        client: FakeClient,
        store: InMemoryPasswordStore,
        scripted_callback: Callable[..., object],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        client.fail_with = ConnectionError("connection reset")
        maintenance = KeyMaintenance(_processor(client, store), scripted_callback([]), period=0.01)  # type: ignore[arg-type]
        with caplog.at_level(logging.ERROR, logger="cryptstore._background"):
            thread = maintenance.start()
            for _ in range(200):
                if client.calls >= 2:
                    break
                time.sleep(0.01)
            assert thread.is_alive()
            maintenance.shutdown(timeout=5)
        assert client.calls >= 2
        assert "Missing keys run failed" in caplog.text

    def test_failed_run_releases_in_flight_guard(
        self, client: FakeClient, store: InMemoryPasswordStore, scripted_callback: Callable[..., object]
    ) -> None:
        client.fail_with = ConnectionError("connection reset")
        maintenance = KeyMaintenance(_processor(client, store), scripted_callback([]))  # type: ignore[arg-type]
        with pytest.raises(ConnectionError):
            maintenance.run_once()
        client.fail_with = None
        client.enabled = False
        assert maintenance.run_once() == []
