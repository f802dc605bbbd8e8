"""Merchant secret encryption at rest."""

import pytest

from paylink.common.crypto import SecretDecryptionError, decrypt_secret, encrypt_secret, generate_key


def test_encrypted_secret_shape_and_roundtrip():
    encrypted = encrypt_secret("CHASECK_TEST-abc")

    assert set(encrypted) == {"iv", "content", "tag"}
    assert "CHASECK" not in encrypted["content"]
    assert decrypt_secret(encrypted) == "CHASECK_TEST-abc"


def test_fresh_iv_per_encryption():
    assert encrypt_secret("same")["iv"] != encrypt_secret("same")["iv"]


def test_wrong_key_or_tampering_detected():
    encrypted = encrypt_secret("secret")

    with pytest.raises(SecretDecryptionError):
        decrypt_secret(encrypted, key=generate_key())
    with pytest.raises(SecretDecryptionError):
        decrypt_secret({**encrypted, "tag": encrypt_secret("other")["tag"]})
    with pytest.raises(SecretDecryptionError):
        decrypt_secret({"iv": encrypted["iv"]})


def test_key_must_be_32_bytes():
    with pytest.raises(ValueError):
        encrypt_secret("secret", key="c2hvcnQ=")
