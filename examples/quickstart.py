"""Quickstart — a local session, a store, write and read with cryptstore.

Demonstrates:
- Creating a SessionConfig with a local backend
- Opening a Session and getting a Store
- Writing, listing and reading files
"""

from __future__ import annotations

import tempfile

from cryptstore import BackendConfig, Session, SessionConfig

if __name__ == "__main__":
    with tempfile.TemporaryDirectory() as tmp:
        config = SessionConfig(backend=BackendConfig(type="local", options={"root": tmp}))

        with Session(config) as session:
            store = session.store("data")

            store.write("hello.txt", b"Hello, world!")
            print(f"File exists: {store.exists('hello.txt')}")

            content = store.read_bytes("hello.txt")
            print(f"Content: {content}")

            attributes = store.attributes("hello.txt")
            print(f"Size: {attributes.size} bytes")
            print(f"Modified: {attributes.modified_at}")

            print("Listing:", [entry.name for entry in store.list()])

    print("Done! Temp directory cleaned up automatically.")
