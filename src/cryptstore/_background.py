"""Periodic provisioning of file keys other users are missing."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from cryptstore._errors import CryptStoreError, LoginCanceled
from cryptstore._keys import (
    UserFileKeySetRequest,
    check_user_key_pair,
    decrypt_file_key,
    encrypt_file_key,
    load_private_key,
)

if TYPE_CHECKING:
    from cryptstore._credentials import PasswordCallback, PasswordStore
    from cryptstore._keys import KeyExchangeClient

log = logging.getLogger(__name__)

DEFAULT_PERIOD = 60.0


def passphrase_account(username: str) -> str:
    """Password store account under which the key pair passphrase is saved."""
    return f"Triple-Crypt ({username})"


class MissingKeysProcessor:
    """One pass of missing file key provisioning.

    :param client: Key exchange API.
    :param password_store: Where the key pair passphrase may be saved.
    :param hostname: Host the passphrase is saved for.
    :param username: Login of the current user.
    """

    def __init__(
        self, client: KeyExchangeClient, password_store: PasswordStore, hostname: str, username: str
    ) -> None:
        self._client = client
        self._store = password_store
        self._hostname = hostname
        self._account = passphrase_account(username)

    def process(self, callback: PasswordCallback) -> list[UserFileKeySetRequest]:
        """Re-encrypt every missing file key the current user holds.

        Never raises for API, crypto or prompt failures: they are logged and
        the requests processed so far are returned.
        """
        processed: list[UserFileKeySetRequest] = []
        try:
            account = self._client.user_account()
            if not account.encryption_enabled:
                return processed
            key_pair = self._client.user_key_pair()
            password = self._store.get_password(self._hostname, self._account)
            save = False
            while not check_user_key_pair(key_pair, password):
                credentials = callback.prompt(
                    "Enter your encryption password", "Enter your encryption password to decrypt your file keys."
                )
                if credentials is None:
                    raise LoginCanceled("Password prompt cancelled")
                password, save = credentials.password, credentials.save
            assert password is not None  # noqa: S101
            if save:
                log.info("Save passphrase")
                self._store.add_password(self._hostname, self._account, password)
            private_key = load_private_key(key_pair.private_key, password)

            missing = self._client.missing_file_keys()
            batch: list[UserFileKeySetRequest] = []
            for item in missing.items:
                processed.append(UserFileKeySetRequest(user_id=item.user_id, file_id=item.file_id))
                public_key = missing.users.get(item.user_id)
                encrypted = missing.files.get(item.file_id)
                if public_key is None or encrypted is None:
                    log.warning("Missing key material for file %d and user %d", item.file_id, item.user_id)
                    continue
                file_key = decrypt_file_key(encrypted, private_key)
                request = UserFileKeySetRequest(
                    user_id=item.user_id, file_id=item.file_id, file_key=encrypt_file_key(file_key, public_key)
                )
                processed[-1] = request
                batch.append(request)
                log.debug("Missing file key for file with id %d processed", item.file_id)
            if batch:
                self._client.set_user_file_keys(batch)
        except LoginCanceled:
            log.warning("Password prompt cancelled")
        except CryptStoreError as exc:
            log.warning("Failure while processing missing file keys. %s", exc)
        return processed


class KeyMaintenance:
    """Runs a :class:`MissingKeysProcessor` periodically until shut down.

    :param processor: The processing pass to run.
    :param callback: Prompt used when no saved passphrase unlocks the key pair.
    :param period: Seconds between runs.
    """

    def __init__(
        self, processor: MissingKeysProcessor, callback: PasswordCallback, period: float = DEFAULT_PERIOD
    ) -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        self._processor = processor
        self._callback = callback
        self._period = period
        self._exit = threading.Event()
        self._running = threading.Lock()
        self._thread: threading.Thread | None = None

    def run_once(self) -> list[UserFileKeySetRequest] | None:
        """Run one pass now. Returns ``None`` if a pass is already in flight."""
        if not self._running.acquire(blocking=False):
            log.debug("Skipping missing keys run, previous run still in progress")
            return None
        try:
            return self._processor.process(self._callback)
        finally:
            self._running.release()

    def run(self) -> None:
        """Block, running a pass immediately and then every period, until :meth:`shutdown`.

        A pass that raises is logged and the next one runs on schedule.
        """
        while not self._exit.is_set():
            try:
                self.run_once()
            except Exception:
                log.exception("Missing keys run failed")
            self._exit.wait(self._period)

    def start(self) -> threading.Thread:
        """Run :meth:`run` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._exit.clear()
        self._thread = threading.Thread(target=self.run, name="cryptstore-key-maintenance", daemon=True)
        self._thread.start()
        return self._thread

    def shutdown(self, timeout: float | None = None) -> None:
        """Signal the loop to exit and wait for the background thread, if any."""
        self._exit.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    @property
    def is_shutdown(self) -> bool:
        return self._exit.is_set()
