"""Encrypted vault — create, use, lock and unlock a vault.

Demonstrates:
- Vault profiles in the session configuration
- Transparent encryption of everything stored below the vault root
- What the backend actually holds
- Unlocking with a password callback and remembering the passphrase
"""

from __future__ import annotations

import tempfile

from cryptstore import (
    BackendConfig,
    Credentials,
    InMemoryPasswordStore,
    LoginFailure,
    PasswordCallback,
    Session,
    SessionConfig,
    VaultProfile,
)

PASSPHRASE = "correct horse battery staple"


class ConsolePrompt(PasswordCallback):
    """Stand-in for an interactive prompt: always answers with the passphrase."""

    def prompt(self, title: str, reason: str) -> Credentials | None:
        print(f"[{title}] {reason}")
        return Credentials(PASSPHRASE, save=True)


if __name__ == "__main__":
    with tempfile.TemporaryDirectory() as tmp:
        config = SessionConfig(
            backend=BackendConfig(type="local", options={"root": tmp}),
            # A low scrypt cost keeps the example fast; keep the default for real vaults.
            vaults={"private": VaultProfile(root="private", scrypt_cost=1 << 14)},
        )
        passwords = InMemoryPasswordStore()

        with Session(config, password_store=passwords) as session:
            session.create_vault("private", PASSPHRASE)
            store = session.store("private")
            store.mkdir("reports")
            store.write("reports/q4.csv", b"revenue,profit\n100,20\n")

            print("Cleartext listing:", [str(e.path) for e in store.list("reports")])
            print("Content:", store.read_bytes("reports/q4.csv").decode().strip())

            raw = session.store()
            print("Backend holds:", [e.name for e in raw.list("private")])

        # A new session: the vault is locked until a passphrase is provided.
        with Session(config, password_store=passwords, password_callback=ConsolePrompt()) as session:
            try:
                session.unlock_vault("private", "not the passphrase")
            except LoginFailure as exc:
                print(f"\nLoginFailure: {exc}")

            session.unlock_vault("private")
            print("Unlocked via prompt:", session.store("private").read_bytes("reports/q4.csv")[:7])

        # The prompt asked to save the passphrase, so the next unlock is silent.
        with Session(config, password_store=passwords) as session:
            session.unlock_vault("private")
            print("Unlocked via saved passphrase:", session.store("private").exists("reports/q4.csv"))

    print("\nDone!")
