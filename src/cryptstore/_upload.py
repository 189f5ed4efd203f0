"""Segmented upload of large payloads with bounded concurrency.

A payload is split into fixed-size segments stored under a hidden
``.file-segments`` prefix of the target container. Segments are uploaded on a
worker pool, each verified against the checksum reported by the backend, and
finally stitched together by committing a manifest through the backend's
``LargeObject`` capability. Segments already present from an earlier attempt
can be reused when appending.
"""

from __future__ import annotations

import dataclasses
import enum
import hashlib
import io
import json
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, BinaryIO

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from cryptstore._capabilities import Capability
from cryptstore._errors import BackendUnavailable, ChecksumError, CryptStoreError, NotFound, TransferCanceled
from cryptstore._path import PathType, RemotePath

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cryptstore._backend import Backend
    from cryptstore._models import Entry, StoredObject

log = logging.getLogger(__name__)

SEGMENT_PREFIX = ".file-segments"
DEFAULT_SEGMENT_SIZE = 64 * 1024 * 1024

_POLL_INTERVAL = 0.1
_SKIP_BLOCK = 1024 * 1024


class CancellationToken:
    """Thread-safe flag a caller sets to abort a running transfer."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class SegmentStatus(enum.Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    SKIPPED = "skipped"


@dataclasses.dataclass
class Segment:
    """One contiguous byte range of the payload and where it is stored.

    :param number: One-based position of the segment.
    :param offset: Byte offset of the segment in the payload.
    :param length: Number of payload bytes in the segment.
    :param path: Storage location of the segment object.
    """

    number: int
    offset: int
    length: int
    path: RemotePath
    status: SegmentStatus = SegmentStatus.PENDING
    checksum: str | None = None
    size: int = 0


@dataclasses.dataclass(frozen=True)
class Manifest:
    """Ordered list of completed segments making up one large object."""

    segments: tuple[Segment, ...] = ()

    @property
    def size(self) -> int:
        return sum(segment.size for segment in self.segments)

    def etag(self) -> str:
        """MD5 over the concatenated segment checksums, as for a static large object."""
        digest = hashlib.md5()  # noqa: S324
        for segment in self.segments:
            digest.update((segment.checksum or "").encode("ascii"))
        return digest.hexdigest()

    def to_json(self) -> str:
        """Serialize as a Swift static large object manifest."""
        return json.dumps(
            [
                {"path": f"/{segment.path}", "etag": segment.checksum, "size_bytes": segment.size}
                for segment in self.segments
            ]
        )


class SegmentService:
    """Naming and planning of segments.

    Segments of ``container/key`` with total length ``L`` live in
    ``container/.file-segments/key/L/`` and are named by their zero-padded
    one-based number, so that a lexicographic listing is in byte order.
    """

    def __init__(self, segment_size: int = DEFAULT_SEGMENT_SIZE) -> None:
        if segment_size <= 0:
            raise ValueError("segment_size must be positive")
        self.segment_size = segment_size

    def directory(self, path: RemotePath, length: int) -> RemotePath:
        parts = path.parts
        if len(parts) == 1:
            return RemotePath(f"{SEGMENT_PREFIX}/{parts[0]}/{length}", PathType.DIRECTORY)
        container, key = parts[0], "/".join(parts[1:])
        return RemotePath(f"{container}/{SEGMENT_PREFIX}/{key}/{length}", PathType.DIRECTORY)

    @staticmethod
    def name(number: int) -> str:
        return f"{number:08d}"

    def plan(self, path: RemotePath, length: int) -> list[Segment]:
        """Split *length* bytes into segments; the last one may be shorter."""
        directory = self.directory(path, length)
        segments: list[Segment] = []
        offset = 0
        number = 1
        while offset < length:
            size = min(self.segment_size, length - offset)
            segments.append(Segment(number, offset, size, directory.child(self.name(number))))
            offset += size
            number += 1
        return segments


def _read_exactly(stream: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        block = stream.read(size - len(buf))
        if not block:
            break
        buf += block
    return bytes(buf)


def _skip(stream: BinaryIO, size: int) -> None:
    seekable = getattr(stream, "seekable", None)
    if seekable is not None and seekable():
        stream.seek(size, io.SEEK_CUR)
        return
    while size > 0:
        block = stream.read(min(_SKIP_BLOCK, size))
        if not block:
            break
        size -= len(block)


class SegmentedUpload:
    """Upload a payload as concurrently transferred segments plus a manifest.

    At most *concurrency* segments are buffered or in flight at any time; the
    calling thread reads the payload and blocks while all slots are taken.

    :param backend: Backend providing ``WRITE`` and ``LARGE_OBJECT`` (and
        ``LIST`` when appending).
    :param segment_size: Bytes per segment.
    :param concurrency: Number of worker threads and buffered segments.
    :param checksum: Verify each segment's MD5 against the backend checksum.
    :param retries: Extra attempts for segments failing with
        :class:`BackendUnavailable`.
    """

    def __init__(
        self,
        backend: Backend,
        segment_size: int = DEFAULT_SEGMENT_SIZE,
        concurrency: int = 4,
        *,
        checksum: bool = True,
        retries: int = 0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if retries < 0:
            raise ValueError("retries must not be negative")
        self._backend = backend
        self._segments = SegmentService(segment_size)
        self._concurrency = concurrency
        self._checksum = checksum
        self._retries = retries

    @property
    def segment_service(self) -> SegmentService:
        return self._segments

    def upload(
        self,
        path: RemotePath,
        stream: BinaryIO,
        length: int,
        *,
        append: bool = False,
        cancel: CancellationToken | None = None,
    ) -> StoredObject:
        """Upload *length* bytes of *stream* to *path*.

        :raises ChecksumError: If a segment checksum does not match.
        :raises TransferCanceled: If *cancel* was set before completion.
        """
        writer = self._backend.feature(Capability.WRITE)
        large_object = self._backend.feature(Capability.LARGE_OBJECT)
        segments = self._segments.plan(path, length)
        existing = self._existing_segments(path, length) if append else []

        slots = threading.BoundedSemaphore(self._concurrency)
        pool = ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="cryptstore-segment")
        futures: list[Future[Segment]] = []
        try:
            for index, segment in enumerate(segments):
                if self._reusable(segment, existing[index] if index < len(existing) else None):
                    _skip(stream, segment.length)
                    continue
                self._acquire(slots, futures, cancel)
                data = _read_exactly(stream, segment.length)
                if len(data) != segment.length:
                    slots.release()
                    raise CryptStoreError(
                        f"Stream ended after {segment.offset + len(data)} of {length} bytes", path=str(path)
                    )
                future = pool.submit(self._upload_segment, writer, segment, data)
                future.add_done_callback(lambda _: slots.release())
                futures.append(future)
                log.debug("Segment %s submitted with size %d and offset %d", segment.path, segment.length, segment.offset)
            self._wait(futures, cancel)
        except BaseException:
            for future in futures:
                future.cancel()
            raise
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        manifest = Manifest(tuple(segments))
        log.debug("Creating manifest for %s: %s", path, manifest.to_json())
        stored = large_object.commit_manifest(path, manifest)
        log.info("Committed %s from %d segments (%d bytes)", path, len(segments), manifest.size)
        return stored

    # region: resumption
    def _existing_segments(self, path: RemotePath, length: int) -> list[Entry]:
        lister = self._backend.feature(Capability.LIST)
        try:
            return sorted(lister.list(self._segments.directory(path, length)), key=lambda e: e.name)
        except NotFound:
            return []

    @staticmethod
    def _reusable(segment: Segment, existing: Entry | None) -> bool:
        if existing is None or existing.name != segment.path.name:
            return False
        if existing.attributes.size != segment.length:
            log.debug("Segment %s has size %d, expected %d", segment.path, existing.attributes.size, segment.length)
            return False
        log.debug("Skip segment %s", segment.path)
        segment.status = SegmentStatus.SKIPPED
        segment.checksum = existing.attributes.checksum
        segment.size = existing.attributes.size
        return True

    # endregion

    # region: workers
    def _acquire(
        self, slots: threading.BoundedSemaphore, futures: Sequence[Future[Segment]], cancel: CancellationToken | None
    ) -> None:
        while not slots.acquire(timeout=_POLL_INTERVAL):
            self._check(futures, cancel)
        try:
            self._check(futures, cancel)
        except BaseException:
            slots.release()
            raise

    @staticmethod
    def _check(futures: Sequence[Future[Segment]], cancel: CancellationToken | None) -> None:
        if cancel is not None and cancel.is_cancelled():
            raise TransferCanceled("Upload canceled")
        for future in futures:
            if future.done() and not future.cancelled():
                exc = future.exception()
                if exc is not None:
                    raise exc

    def _wait(self, futures: Sequence[Future[Segment]], cancel: CancellationToken | None) -> None:
        pending = set(futures)
        while pending:
            if cancel is not None and cancel.is_cancelled():
                raise TransferCanceled("Upload canceled")
            done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_EXCEPTION)
            for future in done:
                exc = future.exception()
                if exc is not None:
                    log.warning("Segment upload failed: %s", exc)
                    raise exc

    def _upload_segment(self, writer: object, segment: Segment, data: bytes) -> Segment:
        retrying = Retrying(
            retry=retry_if_exception_type(BackendUnavailable),
            stop=stop_after_attempt(self._retries + 1),
            wait=wait_exponential(multiplier=0.5, max=10),
            before_sleep=before_sleep_log(log, logging.WARNING),  # type: ignore[arg-type,unused-ignore]
            reraise=True,
        )
        stored = retrying(writer.write, segment.path, data, len(data))  # type: ignore[attr-defined]
        if self._checksum:
            expected = hashlib.md5(data).hexdigest()  # noqa: S324
            if stored.checksum != expected:
                raise ChecksumError(
                    f"Mismatch between MD5 hash of uploaded data ({expected}) "
                    f"and checksum returned by the server ({stored.checksum})",
                    path=str(segment.path),
                    expected=expected,
                    actual=stored.checksum,
                )
            log.debug("Verified checksum for %s", segment.path)
        segment.checksum = stored.checksum
        segment.size = stored.size
        segment.status = SegmentStatus.UPLOADED
        return segment

    # endregion
