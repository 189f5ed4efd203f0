"""Tests for the master key file and the signed vault configuration."""

from __future__ import annotations

import base64
import json

import pytest

from cryptstore._cryptor import MasterKey
from cryptstore._errors import CorruptCiphertext, LoginFailure
from cryptstore._masterkey import (
    MASTERKEY_VERSION,
    VAULT_FORMAT,
    create_masterkey_file,
    create_vault_config,
    unlock_masterkey_file,
    vault_config_key_id,
    verify_vault_config,
)


@pytest.fixture
def master_key() -> MasterKey:
    return MasterKey.generate()


class TestMasterKeyFile:
    def test_unlock_recovers_keys(self, master_key: MasterKey, scrypt_cost: int) -> None:
        data = create_masterkey_file(master_key, "secret", scrypt_cost=scrypt_cost)
        unlocked = unlock_masterkey_file(data, "secret")
        assert unlocked.enc_key == master_key.enc_key
        assert unlocked.mac_key == master_key.mac_key

    def test_document_fields(self, master_key: MasterKey, scrypt_cost: int) -> None:
        document = json.loads(create_masterkey_file(master_key, "secret", scrypt_cost=scrypt_cost))
        assert document["version"] == MASTERKEY_VERSION
        assert document["scryptCostParam"] == scrypt_cost
        assert document["scryptBlockSize"] == 8
        assert len(base64.b64decode(document["scryptSalt"])) == 8
        assert len(base64.b64decode(document["primaryMasterKey"])) == 40
        assert len(base64.b64decode(document["hmacMasterKey"])) == 40

    def test_passphrase_is_nfc_normalized(self, master_key: MasterKey, scrypt_cost: int) -> None:
        data = create_masterkey_file(master_key, "Gru\u0308n", scrypt_cost=scrypt_cost)
        assert unlock_masterkey_file(data, "Gr\u00fcn").enc_key == master_key.enc_key

    def test_wrong_passphrase(self, master_key: MasterKey, scrypt_cost: int) -> None:
        data = create_masterkey_file(master_key, "secret", scrypt_cost=scrypt_cost)
        with pytest.raises(LoginFailure):
            unlock_masterkey_file(data, "wrong")

    def test_tampered_version(self, master_key: MasterKey, scrypt_cost: int) -> None:
        document = json.loads(create_masterkey_file(master_key, "secret", scrypt_cost=scrypt_cost))
        document["version"] = 7
        with pytest.raises(LoginFailure, match="Version MAC"):
            unlock_masterkey_file(json.dumps(document).encode(), "secret")

    @pytest.mark.parametrize("data", [b"not json", b"{}", b'{"scryptSalt": 1}'])
    def test_malformed(self, data: bytes) -> None:
        with pytest.raises(CorruptCiphertext):
            unlock_masterkey_file(data, "secret")

    def test_invalid_cost(self, master_key: MasterKey, scrypt_cost: int) -> None:
        document = json.loads(create_masterkey_file(master_key, "secret", scrypt_cost=scrypt_cost))
        document["scryptCostParam"] = 1000
        with pytest.raises(CorruptCiphertext, match="scryptCostParam"):
            unlock_masterkey_file(json.dumps(document).encode(), "secret")


class TestVaultConfig:
    def test_verify_returns_claims(self, master_key: MasterKey) -> None:
        token = create_vault_config(master_key, shortening_threshold=100)
        claims = verify_vault_config(token, master_key)
        assert claims["format"] == VAULT_FORMAT
        assert claims["shorteningThreshold"] == 100
        assert claims["cipherCombo"] == "SIV_GCM"

    def test_key_id(self, master_key: MasterKey) -> None:
        assert vault_config_key_id(create_vault_config(master_key)) == "masterkeyfile:masterkey.cryptomator"

    def test_key_id_malformed(self) -> None:
        with pytest.raises(CorruptCiphertext):
            vault_config_key_id(b"garbage")

    def test_signed_by_other_key(self, master_key: MasterKey) -> None:
        token = create_vault_config(MasterKey.generate())
        with pytest.raises(LoginFailure):
            verify_vault_config(token, master_key)

    def test_tampered_payload(self, master_key: MasterKey) -> None:
        header, _, signature = create_vault_config(master_key).split(b".")
        forged = base64.urlsafe_b64encode(json.dumps({"format": 8, "shorteningThreshold": 1}).encode()).rstrip(b"=")
        with pytest.raises(LoginFailure):
            verify_vault_config(header + b"." + forged + b"." + signature, master_key)

    def test_not_three_parts(self, master_key: MasterKey) -> None:
        with pytest.raises(CorruptCiphertext):
            verify_vault_config(b"a.b", master_key)
