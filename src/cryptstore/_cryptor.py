"""Vault cryptography: file names, directory identifiers and file content.

Names are encrypted with deterministic AES-SIV (RFC 5297) using the
directory identifier as associated data. File content is a header holding a
random per-file content key, encrypted under the vault encryption key,
followed by independently authenticated AES-GCM chunks so that any chunk
can be decrypted on its own. The header also records the cleartext length,
which is how a reader tells a truncated file from a complete one.
"""

from __future__ import annotations

import base64
import hashlib
import io
import os
import unicodedata
from typing import TYPE_CHECKING, BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, AESSIV

from cryptstore._errors import ChecksumError, CorruptCiphertext

if TYPE_CHECKING:
    from collections.abc import Iterator

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
CHUNK_SIZE = 32 * 1024
CHUNK_OVERHEAD = NONCE_SIZE + TAG_SIZE
CIPHERTEXT_CHUNK_SIZE = CHUNK_SIZE + CHUNK_OVERHEAD
_LENGTH_SIZE = 8
HEADER_SIZE = NONCE_SIZE + _LENGTH_SIZE + KEY_SIZE + TAG_SIZE


def _wipe(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


class MasterKey:
    """The vault's encryption key and MAC key.

    Held in mutable buffers so :meth:`destroy` can overwrite them.
    """

    __slots__ = ("_enc_key", "_mac_key")

    def __init__(self, enc_key: bytes, mac_key: bytes) -> None:
        if len(enc_key) != KEY_SIZE or len(mac_key) != KEY_SIZE:
            raise ValueError(f"Master keys must be {KEY_SIZE} bytes each")
        self._enc_key = bytearray(enc_key)
        self._mac_key = bytearray(mac_key)

    @classmethod
    def generate(cls) -> MasterKey:
        return cls(os.urandom(KEY_SIZE), os.urandom(KEY_SIZE))

    @property
    def enc_key(self) -> bytes:
        return bytes(self._enc_key)

    @property
    def mac_key(self) -> bytes:
        return bytes(self._mac_key)

    def is_destroyed(self) -> bool:
        return not any(self._enc_key) and not any(self._mac_key)

    def destroy(self) -> None:
        _wipe(self._enc_key)
        _wipe(self._mac_key)


class FileNameCryptor:
    """Deterministic name encryption scoped by directory identifier."""

    def __init__(self, master_key: MasterKey) -> None:
        # RFC 5297 key order: MAC key first, then the CTR key.
        self._siv = AESSIV(master_key.mac_key + master_key.enc_key)

    def hash_directory_id(self, dir_id: str) -> str:
        """Base32 SHA-1 of the SIV-encrypted identifier (32 characters)."""
        encrypted = self._siv.encrypt(dir_id.encode("utf-8"), None)
        return base64.b32encode(hashlib.sha1(encrypted).digest()).decode("ascii")  # noqa: S324

    def encrypt(self, dir_id: str, name: str) -> str:
        cleartext = unicodedata.normalize("NFC", name).encode("utf-8")
        encrypted = self._siv.encrypt(cleartext, [dir_id.encode("utf-8")])
        return base64.urlsafe_b64encode(encrypted).decode("ascii")

    def decrypt(self, dir_id: str, ciphertext: str) -> str:
        """Reverse :meth:`encrypt`.

        :raises CorruptCiphertext: If the input is not valid base64url or
            fails authentication under *dir_id*.
        """
        try:
            raw = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
        except (ValueError, UnicodeEncodeError):
            raise CorruptCiphertext(f"Malformed ciphertext name: {ciphertext!r}") from None
        if len(raw) < TAG_SIZE:
            raise CorruptCiphertext(f"Ciphertext name too short: {ciphertext!r}")
        try:
            return self._siv.decrypt(raw, [dir_id.encode("utf-8")]).decode("utf-8")
        except InvalidTag:
            raise CorruptCiphertext(f"Authentication of ciphertext name failed: {ciphertext!r}") from None
        except UnicodeDecodeError:
            raise CorruptCiphertext(f"Ciphertext name does not decode to text: {ciphertext!r}") from None


class FileHeader:
    __slots__ = ("nonce", "content_key", "size")

    def __init__(self, nonce: bytes, content_key: bytes, size: int) -> None:
        self.nonce = nonce
        self.content_key = content_key
        self.size = size


class ContentCryptor:
    """Chunked, authenticated file content encryption."""

    def __init__(self, master_key: MasterKey) -> None:
        self._header_cipher = AESGCM(master_key.enc_key)

    @staticmethod
    def create_header(size: int) -> FileHeader:
        """A fresh header for a file of *size* cleartext bytes."""
        if size < 0:
            raise ValueError("Size must not be negative")
        return FileHeader(os.urandom(NONCE_SIZE), os.urandom(KEY_SIZE), size)

    def encrypt_header(self, header: FileHeader) -> bytes:
        payload = header.size.to_bytes(_LENGTH_SIZE, "big") + header.content_key
        return header.nonce + self._header_cipher.encrypt(header.nonce, payload, None)

    def decrypt_header(self, data: bytes) -> FileHeader:
        """:raises ChecksumError: If the header is truncated or fails authentication."""
        if len(data) != HEADER_SIZE:
            raise ChecksumError(f"File header truncated: {len(data)} of {HEADER_SIZE} bytes")
        nonce = data[:NONCE_SIZE]
        try:
            payload = self._header_cipher.decrypt(nonce, data[NONCE_SIZE:], None)
        except InvalidTag:
            raise ChecksumError("File header authentication failed") from None
        size = int.from_bytes(payload[:_LENGTH_SIZE], "big")
        return FileHeader(nonce, payload[_LENGTH_SIZE:], size)

    @staticmethod
    def _chunk_ad(header: FileHeader, index: int) -> bytes:
        return index.to_bytes(8, "big") + header.nonce

    def encrypt_chunk(self, header: FileHeader, index: int, cleartext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + AESGCM(header.content_key).encrypt(nonce, cleartext, self._chunk_ad(header, index))

    def decrypt_chunk(self, header: FileHeader, index: int, ciphertext: bytes) -> bytes:
        """:raises ChecksumError: If the chunk is truncated, reordered or tampered with."""
        if len(ciphertext) <= CHUNK_OVERHEAD:
            raise ChecksumError(f"Chunk {index} truncated to {len(ciphertext)} bytes")
        nonce = ciphertext[:NONCE_SIZE]
        try:
            return AESGCM(header.content_key).decrypt(nonce, ciphertext[NONCE_SIZE:], self._chunk_ad(header, index))
        except InvalidTag:
            raise ChecksumError(f"Authentication of chunk {index} failed") from None

    def encrypt_bytes(self, cleartext: bytes) -> bytes:
        return b"".join(self.encrypt_stream(io.BytesIO(cleartext), len(cleartext)))

    def encrypt_stream(self, source: BinaryIO, length: int) -> Iterator[bytes]:
        """Yield the header, then one ciphertext chunk per cleartext chunk of *source*.

        :raises ValueError: If *source* ends before *length* bytes were read.
        """
        header = self.create_header(length)
        yield self.encrypt_header(header)
        index = 0
        remaining = length
        while remaining > 0:
            chunk = _read_exactly(source, min(CHUNK_SIZE, remaining))
            if not chunk:
                raise ValueError(f"Source ended after {length - remaining} of {length} bytes")
            yield self.encrypt_chunk(header, index, chunk)
            remaining -= len(chunk)
            index += 1

    def decrypt_bytes(self, ciphertext: bytes) -> bytes:
        with DecryptingReader(self, io.BytesIO(ciphertext)) as reader:
            return reader.read()


def _read_exactly(source: BinaryIO, size: int) -> bytes:
    parts: list[bytes] = []
    while size > 0:
        block = source.read(size)
        if not block:
            break
        parts.append(block)
        size -= len(block)
    return b"".join(parts)


def ciphertext_size(cleartext_size: int) -> int:
    """Size of the encrypted form of *cleartext_size* bytes, header included."""
    if cleartext_size < 0:
        raise ValueError("Size must not be negative")
    full, rest = divmod(cleartext_size, CHUNK_SIZE)
    size = HEADER_SIZE + full * CIPHERTEXT_CHUNK_SIZE
    if rest:
        size += rest + CHUNK_OVERHEAD
    return size


def cleartext_size(size: int) -> int:
    """Inverse of :func:`ciphertext_size`.

    :raises CorruptCiphertext: If no cleartext length encrypts to *size* bytes.
    """
    if size < HEADER_SIZE:
        raise CorruptCiphertext(f"Ciphertext of {size} bytes is shorter than the file header")
    full, rest = divmod(size - HEADER_SIZE, CIPHERTEXT_CHUNK_SIZE)
    if rest and rest <= CHUNK_OVERHEAD:
        raise CorruptCiphertext(f"Invalid ciphertext size {size}")
    return full * CHUNK_SIZE + (rest - CHUNK_OVERHEAD if rest else 0)


class EncryptingReader(io.RawIOBase):
    """Readable stream producing the ciphertext of *length* bytes of *source*."""

    def __init__(self, cryptor: ContentCryptor, source: BinaryIO, length: int) -> None:
        super().__init__()
        self._chunks = cryptor.encrypt_stream(source, length)
        self._buffer = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b: bytearray | memoryview) -> int:  # type: ignore[override]
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


class DecryptingReader(io.RawIOBase):
    """Readable, seekable cleartext view over an encrypted file.

    Only the chunks covering the requested range are read and decrypted.
    Seeking requires a seekable *raw* stream.

    :raises ChecksumError: On any truncated or tampered header or chunk.
    """

    def __init__(self, cryptor: ContentCryptor, raw: BinaryIO) -> None:
        super().__init__()
        self._cryptor = cryptor
        self._raw = raw
        self._header = cryptor.decrypt_header(_read_exactly(raw, HEADER_SIZE))
        self._raw_pos = HEADER_SIZE
        self._pos = 0
        self._chunk_index = -1
        self._chunk = b""

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        try:
            return bool(self._raw.seekable())
        except AttributeError:
            return False

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._pos + offset
        elif whence == io.SEEK_END:
            target = self._header.size + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")
        if target < 0:
            raise ValueError(f"Negative seek position {target}")
        self._pos = target
        return target

    def _load_chunk(self, index: int) -> None:
        offset = HEADER_SIZE + index * CIPHERTEXT_CHUNK_SIZE
        if offset != self._raw_pos:
            if not self.seekable():
                raise io.UnsupportedOperation("Underlying stream is not seekable")
            self._raw.seek(offset)
        data = _read_exactly(self._raw, CIPHERTEXT_CHUNK_SIZE)
        self._raw_pos = offset + len(data)
        expected = min(CHUNK_SIZE, self._header.size - index * CHUNK_SIZE)
        if not data:
            raise ChecksumError(f"Ciphertext truncated before chunk {index} of a {self._header.size} byte file")
        chunk = self._cryptor.decrypt_chunk(self._header, index, data)
        if len(chunk) != expected:
            raise ChecksumError(f"Chunk {index} holds {len(chunk)} bytes, expected {expected}")
        self._chunk_index = index
        self._chunk = chunk

    def readinto(self, b: bytearray | memoryview) -> int:  # type: ignore[override]
        if self._pos >= self._header.size:
            return 0
        index, within = divmod(self._pos, CHUNK_SIZE)
        if index != self._chunk_index:
            self._load_chunk(index)
        available = self._chunk[within:]
        n = min(len(b), len(available))
        b[:n] = available[:n]
        self._pos += n
        return n

    def close(self) -> None:
        if not self.closed:
            self._raw.close()
        super().close()


def decrypt_range(cryptor: ContentCryptor, raw: BinaryIO, offset: int, length: int) -> bytes:
    """Decrypt *length* cleartext bytes starting at *offset* without reading the rest."""
    reader = DecryptingReader(cryptor, raw)
    reader.seek(offset)
    return reader.read(length)
