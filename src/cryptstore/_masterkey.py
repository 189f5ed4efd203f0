"""Vault key files: the passphrase-protected master key file and the signed vault configuration."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import unicodedata
import uuid
from typing import Any

from cryptography.hazmat.primitives.keywrap import InvalidUnwrap, aes_key_unwrap, aes_key_wrap
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from cryptstore._cryptor import MasterKey
from cryptstore._errors import CorruptCiphertext, LoginFailure

MASTERKEY_FILENAME = "masterkey.cryptomator"
VAULT_CONFIG_FILENAME = "vault.cryptomator"

VAULT_FORMAT = 8
MASTERKEY_VERSION = 999
CIPHER_COMBO = "SIV_GCM"
DEFAULT_SHORTENING_THRESHOLD = 220
DEFAULT_SCRYPT_COST = 1 << 15
DEFAULT_SCRYPT_BLOCK_SIZE = 8
_SALT_SIZE = 8
_KID = f"masterkeyfile:{MASTERKEY_FILENAME}"


def _b64url(data: bytes) -> bytes:
    return base64.urlsafe_b64encode(data).rstrip(b"=")


def _b64url_decode(data: bytes) -> bytes:
    return base64.urlsafe_b64decode(data + b"=" * (-len(data) % 4))


def _derive_kek(passphrase: str, salt: bytes, cost: int, block_size: int) -> bytes:
    normalized = unicodedata.normalize("NFC", passphrase).encode("utf-8")
    return Scrypt(salt=salt, length=32, n=cost, r=block_size, p=1).derive(normalized)


def _version_mac(mac_key: bytes, version: int) -> str:
    digest = hmac.new(mac_key, version.to_bytes(4, "big"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def create_masterkey_file(
    master_key: MasterKey,
    passphrase: str,
    *,
    scrypt_cost: int = DEFAULT_SCRYPT_COST,
    scrypt_block_size: int = DEFAULT_SCRYPT_BLOCK_SIZE,
) -> bytes:
    """Serialize *master_key* wrapped under a key derived from *passphrase*."""
    salt = os.urandom(_SALT_SIZE)
    kek = _derive_kek(passphrase, salt, scrypt_cost, scrypt_block_size)
    document = {
        "version": MASTERKEY_VERSION,
        "scryptSalt": base64.b64encode(salt).decode("ascii"),
        "scryptCostParam": scrypt_cost,
        "scryptBlockSize": scrypt_block_size,
        "primaryMasterKey": base64.b64encode(aes_key_wrap(kek, master_key.enc_key)).decode("ascii"),
        "hmacMasterKey": base64.b64encode(aes_key_wrap(kek, master_key.mac_key)).decode("ascii"),
        "versionMac": _version_mac(master_key.mac_key, MASTERKEY_VERSION),
    }
    return json.dumps(document, indent=2).encode("utf-8")


def unlock_masterkey_file(data: bytes, passphrase: str) -> MasterKey:
    """Recover the master key from a master key file.

    :raises LoginFailure: If *passphrase* is wrong or the file was tampered with.
    :raises CorruptCiphertext: If the file is not a master key file.
    """
    try:
        document = json.loads(data)
        salt = base64.b64decode(document["scryptSalt"])
        cost = int(document["scryptCostParam"])
        block_size = int(document["scryptBlockSize"])
        wrapped_enc = base64.b64decode(document["primaryMasterKey"])
        wrapped_mac = base64.b64decode(document["hmacMasterKey"])
        version = int(document["version"])
    except (ValueError, KeyError, TypeError):
        raise CorruptCiphertext(f"Malformed {MASTERKEY_FILENAME}") from None
    if cost < 2 or cost & (cost - 1):
        raise CorruptCiphertext(f"Invalid scryptCostParam {cost} in {MASTERKEY_FILENAME}")
    if block_size < 1:
        raise CorruptCiphertext(f"Invalid scryptBlockSize {block_size} in {MASTERKEY_FILENAME}")

    kek = _derive_kek(passphrase, salt, cost, block_size)
    try:
        enc_key = aes_key_unwrap(kek, wrapped_enc)
        mac_key = aes_key_unwrap(kek, wrapped_mac)
    except InvalidUnwrap:
        raise LoginFailure("Invalid passphrase") from None
    if not hmac.compare_digest(_version_mac(mac_key, version), str(document.get("versionMac", ""))):
        raise LoginFailure(f"Version MAC mismatch in {MASTERKEY_FILENAME}")
    return MasterKey(enc_key, mac_key)


def create_vault_config(
    master_key: MasterKey, *, shortening_threshold: int = DEFAULT_SHORTENING_THRESHOLD
) -> bytes:
    """Return the vault configuration as a JWT signed with the master keys."""
    header = {"kid": _KID, "typ": "JWT", "alg": "HS256"}
    payload = {
        "format": VAULT_FORMAT,
        "shorteningThreshold": shortening_threshold,
        "jti": str(uuid.uuid4()),
        "cipherCombo": CIPHER_COMBO,
    }
    signed = _b64url(json.dumps(header).encode("utf-8")) + b"." + _b64url(json.dumps(payload).encode("utf-8"))
    signature = hmac.new(master_key.enc_key + master_key.mac_key, signed, hashlib.sha256).digest()
    return signed + b"." + _b64url(signature)


def vault_config_key_id(token: bytes) -> str:
    """Return the ``kid`` header naming the key file, without verifying the token."""
    try:
        header = json.loads(_b64url_decode(token.split(b".")[0]))
        return str(header["kid"])
    except (ValueError, KeyError, TypeError, IndexError):
        raise CorruptCiphertext(f"Malformed {VAULT_CONFIG_FILENAME}") from None


def verify_vault_config(token: bytes, master_key: MasterKey) -> dict[str, Any]:
    """Check the signature of a vault configuration and return its claims.

    :raises LoginFailure: If the signature does not match the master keys.
    :raises CorruptCiphertext: If the token is malformed or of an unsupported format.
    """
    parts = token.strip().split(b".")
    if len(parts) != 3:
        raise CorruptCiphertext(f"Malformed {VAULT_CONFIG_FILENAME}")
    header_b64, payload_b64, signature_b64 = parts
    try:
        header = json.loads(_b64url_decode(header_b64))
        payload = json.loads(_b64url_decode(payload_b64))
        signature = _b64url_decode(signature_b64)
    except ValueError:
        raise CorruptCiphertext(f"Malformed {VAULT_CONFIG_FILENAME}") from None
    if header.get("alg") != "HS256":
        raise CorruptCiphertext(f"Unsupported signature algorithm {header.get('alg')!r}")
    expected = hmac.new(master_key.enc_key + master_key.mac_key, header_b64 + b"." + payload_b64, hashlib.sha256)
    if not hmac.compare_digest(expected.digest(), signature):
        raise LoginFailure(f"Signature of {VAULT_CONFIG_FILENAME} does not match the master key")
    if payload.get("format") != VAULT_FORMAT or payload.get("cipherCombo") != CIPHER_COMBO:
        raise CorruptCiphertext(
            f"Unsupported vault format {payload.get('format')!r} / {payload.get('cipherCombo')!r}"
        )
    return dict(payload)
