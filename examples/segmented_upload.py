"""Segmented upload — large payloads in parallel segments, resumable and cancellable.

Demonstrates:
- Transfer options in the session configuration
- Uploading a stream through Store.upload()
- Resuming an interrupted upload with append=True
- Cancelling a running upload with a CancellationToken
"""

from __future__ import annotations

import io
import os
import tempfile
import threading

from cryptstore import (
    BackendConfig,
    CancellationToken,
    Session,
    SessionConfig,
    TransferCanceled,
    TransferOptions,
)

if __name__ == "__main__":
    payload = os.urandom(5 * 1024 * 1024 + 123)

    with tempfile.TemporaryDirectory() as tmp:
        config = SessionConfig(
            backend=BackendConfig(type="local", options={"root": tmp}),
            transfer=TransferOptions(segment_size=1024 * 1024, concurrency=3, retries=2),
        )

        with Session(config) as session:
            store = session.store("media")

            # --- Cancel from another thread ---
            token = CancellationToken()
            threading.Timer(0.01, token.cancel).start()
            try:
                store.upload("video.bin", io.BytesIO(payload), cancel=token)
            except TransferCanceled as exc:
                print(f"TransferCanceled: {exc}")

            # --- Resume: segments already stored are reused ---
            stored = store.upload("video.bin", io.BytesIO(payload), append=True)
            print(f"Uploaded {stored.size} bytes, etag {stored.checksum}")
            assert store.read_bytes("video.bin") == payload

            segments = store.list(f".file-segments/video.bin/{len(payload)}")
            print("Segments:", [entry.name for entry in segments])

    print("\nDone!")
