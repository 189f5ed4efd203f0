"""Tests for name, directory identifier and content cryptography."""

from __future__ import annotations

import io
import os

import pytest

from cryptstore._cryptor import (
    CHUNK_OVERHEAD,
    CHUNK_SIZE,
    CIPHERTEXT_CHUNK_SIZE,
    HEADER_SIZE,
    ContentCryptor,
    DecryptingReader,
    EncryptingReader,
    FileNameCryptor,
    MasterKey,
    ciphertext_size,
    cleartext_size,
    decrypt_range,
)
from cryptstore._errors import ChecksumError, CorruptCiphertext


@pytest.fixture
def master_key() -> MasterKey:
    return MasterKey(b"\x01" * 32, b"\x02" * 32)


@pytest.fixture
def names(master_key: MasterKey) -> FileNameCryptor:
    return FileNameCryptor(master_key)


@pytest.fixture
def content(master_key: MasterKey) -> ContentCryptor:
    return ContentCryptor(master_key)


class TestMasterKey:
    def test_wrong_length_rejected(self) -> None:
        with pytest.raises(ValueError, match="32 bytes"):
            MasterKey(b"short", b"\x00" * 32)

    def test_generate_is_random(self) -> None:
        assert MasterKey.generate().enc_key != MasterKey.generate().enc_key

    def test_destroy_wipes_keys(self, master_key: MasterKey) -> None:
        assert not master_key.is_destroyed()
        master_key.destroy()
        assert master_key.is_destroyed()
        assert master_key.enc_key == b"\x00" * 32


class TestFileNames:
    def test_deterministic(self, names: FileNameCryptor) -> None:
        assert names.encrypt("id", "report.pdf") == names.encrypt("id", "report.pdf")

    def test_scoped_by_directory_id(self, names: FileNameCryptor) -> None:
        assert names.encrypt("one", "report.pdf") != names.encrypt("two", "report.pdf")

    def test_decrypt(self, names: FileNameCryptor) -> None:
        assert names.decrypt("id", names.encrypt("id", "Grüße.txt")) == "Grüße.txt"

    def test_normalized_to_nfc(self, names: FileNameCryptor) -> None:
        decomposed = "Gru\u0308sse"
        composed = "Gr\u00fcsse"
        assert names.encrypt("", decomposed) == names.encrypt("", composed)

    def test_url_safe_alphabet(self, names: FileNameCryptor) -> None:
        for i in range(50):
            encrypted = names.encrypt("", f"name-{i}")
            assert "+" not in encrypted
            assert "/" not in encrypted

    def test_wrong_directory_id_fails(self, names: FileNameCryptor) -> None:
        with pytest.raises(CorruptCiphertext):
            names.decrypt("other", names.encrypt("id", "a"))

    @pytest.mark.parametrize("ciphertext", ["not base64!", "AAAA", "é"])
    def test_malformed_rejected(self, names: FileNameCryptor, ciphertext: str) -> None:
        with pytest.raises(CorruptCiphertext):
            names.decrypt("", ciphertext)

    def test_other_key_fails(self, names: FileNameCryptor) -> None:
        other = FileNameCryptor(MasterKey(b"\x03" * 32, b"\x04" * 32))
        with pytest.raises(CorruptCiphertext):
            other.decrypt("", names.encrypt("", "a"))


class TestDirectoryIdHash:
    def test_base32_length(self, names: FileNameCryptor) -> None:
        hashed = names.hash_directory_id("")
        assert len(hashed) == 32
        assert set(hashed) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_stable_and_distinct(self, names: FileNameCryptor) -> None:
        assert names.hash_directory_id("x") == names.hash_directory_id("x")
        assert names.hash_directory_id("x") != names.hash_directory_id("y")


class TestSizes:
    @pytest.mark.parametrize(
        ("clear", "cipher"),
        [
            (0, HEADER_SIZE),
            (1, HEADER_SIZE + 1 + CHUNK_OVERHEAD),
            (CHUNK_SIZE, HEADER_SIZE + CIPHERTEXT_CHUNK_SIZE),
            (CHUNK_SIZE + 1, HEADER_SIZE + CIPHERTEXT_CHUNK_SIZE + 1 + CHUNK_OVERHEAD),
        ],
    )
    def test_ciphertext_size(self, clear: int, cipher: int) -> None:
        assert ciphertext_size(clear) == cipher
        assert cleartext_size(cipher) == clear

    def test_header_size(self) -> None:
        assert HEADER_SIZE == 68

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValueError):
            ciphertext_size(-1)

    @pytest.mark.parametrize("size", [0, HEADER_SIZE - 1, HEADER_SIZE + CHUNK_OVERHEAD])
    def test_impossible_ciphertext_size(self, size: int) -> None:
        with pytest.raises(CorruptCiphertext):
            cleartext_size(size)


class TestContent:
    @pytest.mark.parametrize("size", [0, 1, CHUNK_SIZE - 1, CHUNK_SIZE, 3 * CHUNK_SIZE + 17])
    def test_encrypt_decrypt(self, content: ContentCryptor, size: int) -> None:
        data = os.urandom(size)
        encrypted = content.encrypt_bytes(data)
        assert len(encrypted) == ciphertext_size(size)
        assert content.decrypt_bytes(encrypted) == data

    def test_randomized(self, content: ContentCryptor) -> None:
        assert content.encrypt_bytes(b"same") != content.encrypt_bytes(b"same")

    def test_tampered_chunk_detected(self, content: ContentCryptor) -> None:
        encrypted = bytearray(content.encrypt_bytes(b"x" * 100))
        encrypted[HEADER_SIZE + 20] ^= 0xFF
        with pytest.raises(ChecksumError, match="chunk 0"):
            content.decrypt_bytes(bytes(encrypted))

    def test_tampered_header_detected(self, content: ContentCryptor) -> None:
        encrypted = bytearray(content.encrypt_bytes(b"x"))
        encrypted[20] ^= 0xFF
        with pytest.raises(ChecksumError, match="header"):
            content.decrypt_bytes(bytes(encrypted))

    def test_truncated_header_detected(self, content: ContentCryptor) -> None:
        with pytest.raises(ChecksumError, match="truncated"):
            content.decrypt_bytes(b"\x00" * 10)

    def test_truncated_at_chunk_boundary_detected(self, content: ContentCryptor) -> None:
        encrypted = content.encrypt_bytes(os.urandom(2 * CHUNK_SIZE))
        with pytest.raises(ChecksumError, match="truncated before chunk 1"):
            content.decrypt_bytes(encrypted[: HEADER_SIZE + CIPHERTEXT_CHUNK_SIZE])

    def test_truncated_to_header_detected(self, content: ContentCryptor) -> None:
        encrypted = content.encrypt_bytes(b"x" * 100)
        with pytest.raises(ChecksumError, match="truncated before chunk 0"):
            content.decrypt_bytes(encrypted[:HEADER_SIZE])

    def test_truncated_inside_last_chunk_detected(self, content: ContentCryptor) -> None:
        encrypted = content.encrypt_bytes(b"x" * (CHUNK_SIZE + 100))
        with pytest.raises(ChecksumError, match="chunk 1"):
            content.decrypt_bytes(encrypted[:-10])

    def test_header_records_length(self, content: ContentCryptor) -> None:
        encrypted = content.encrypt_bytes(b"x" * 1234)
        assert content.decrypt_header(encrypted[:HEADER_SIZE]).size == 1234

    def test_short_source_rejected(self, content: ContentCryptor) -> None:
        with pytest.raises(ValueError, match="ended after 3 of 10 bytes"):
            b"".join(content.encrypt_stream(io.BytesIO(b"abc"), 10))

    def test_swapped_chunks_detected(self, content: ContentCryptor) -> None:
        encrypted = content.encrypt_bytes(b"a" * CHUNK_SIZE + b"b" * CHUNK_SIZE)
        header = encrypted[:HEADER_SIZE]
        first = encrypted[HEADER_SIZE : HEADER_SIZE + CIPHERTEXT_CHUNK_SIZE]
        second = encrypted[HEADER_SIZE + CIPHERTEXT_CHUNK_SIZE :]
        with pytest.raises(ChecksumError):
            content.decrypt_bytes(header + second + first)

    def test_chunk_from_other_file_detected(self, content: ContentCryptor) -> None:
        one = content.encrypt_bytes(b"a" * 10)
        two = content.encrypt_bytes(b"a" * 10)
        with pytest.raises(ChecksumError):
            content.decrypt_bytes(one[:HEADER_SIZE] + two[HEADER_SIZE:])

    def test_other_master_key_cannot_read_header(self, content: ContentCryptor) -> None:
        other = ContentCryptor(MasterKey(b"\x09" * 32, b"\x02" * 32))
        with pytest.raises(ChecksumError):
            other.decrypt_bytes(content.encrypt_bytes(b"secret"))


class TestStreams:
    def test_encrypting_reader(self, content: ContentCryptor) -> None:
        data = os.urandom(2 * CHUNK_SIZE + 5)
        reader = io.BufferedReader(EncryptingReader(content, io.BytesIO(data), len(data)))
        encrypted = reader.read()
        assert len(encrypted) == ciphertext_size(len(data))
        assert content.decrypt_bytes(encrypted) == data

    def test_encrypting_reader_stops_at_length(self, content: ContentCryptor) -> None:
        reader = EncryptingReader(content, io.BytesIO(b"0123456789"), 4)
        assert content.decrypt_bytes(reader.read()) == b"0123"

    def test_small_reads(self, content: ContentCryptor) -> None:
        data = os.urandom(CHUNK_SIZE + 100)
        reader = DecryptingReader(content, io.BytesIO(content.encrypt_bytes(data)))
        parts = []
        while True:
            part = reader.read(1000)
            if not part:
                break
            parts.append(part)
        assert b"".join(parts) == data

    def test_seek_and_tell(self, content: ContentCryptor) -> None:
        data = os.urandom(3 * CHUNK_SIZE)
        reader = DecryptingReader(content, io.BytesIO(content.encrypt_bytes(data)))
        assert reader.seekable()
        reader.seek(CHUNK_SIZE + 10)
        assert reader.tell() == CHUNK_SIZE + 10
        assert reader.read(20) == data[CHUNK_SIZE + 10 : CHUNK_SIZE + 30]
        reader.seek(-5, io.SEEK_END)
        assert reader.read() == data[-5:]
        reader.seek(0)
        assert reader.read(3) == data[:3]

    def test_negative_seek_rejected(self, content: ContentCryptor) -> None:
        reader = DecryptingReader(content, io.BytesIO(content.encrypt_bytes(b"abc")))
        with pytest.raises(ValueError):
            reader.seek(-1)

    def test_read_past_end(self, content: ContentCryptor) -> None:
        reader = DecryptingReader(content, io.BytesIO(content.encrypt_bytes(b"abc")))
        reader.seek(100)
        assert reader.read() == b""

    def test_decrypt_range_spanning_chunks(self, content: ContentCryptor) -> None:
        data = os.urandom(4 * CHUNK_SIZE)
        raw = io.BytesIO(content.encrypt_bytes(data))
        offset = 2 * CHUNK_SIZE - 7
        assert decrypt_range(content, raw, offset, 100) == data[offset : offset + 100]

    def test_close_closes_raw(self, content: ContentCryptor) -> None:
        raw = io.BytesIO(content.encrypt_bytes(b"abc"))
        with DecryptingReader(content, raw) as reader:
            reader.read()
        assert raw.closed
