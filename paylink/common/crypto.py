"""AES-256-GCM helpers for merchant gateway secrets at rest.

Encrypted secrets are stored as `{"iv", "content", "tag"}` base64 strings so the
JSON column stays readable by ops tooling without exposing plaintext.
"""

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from paylink.common.config import settings

NONCE_BYTES = 12
TAG_BYTES = 16


class SecretDecryptionError(ValueError):
    """Stored secret could not be decrypted with the configured key."""


def _load_key(key: str | None = None) -> bytes:
    raw = key if key is not None else settings.merchant_secret_encryption_key
    if not raw:
        raise ValueError("MERCHANT_SECRET_ENCRYPTION_KEY is not defined")
    decoded = base64.b64decode(raw)
    if len(decoded) != 32:
        raise ValueError("MERCHANT_SECRET_ENCRYPTION_KEY must be 32 bytes")
    return decoded


def generate_key() -> str:
    """Return a fresh base64 encoded 32 byte key."""

    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def encrypt_secret(plain_text: str, key: str | None = None) -> dict[str, str]:
    aesgcm = AESGCM(_load_key(key))
    iv = os.urandom(NONCE_BYTES)
    sealed = aesgcm.encrypt(iv, plain_text.encode("utf-8"), None)
    content, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return {
        "iv": base64.b64encode(iv).decode("ascii"),
        "content": base64.b64encode(content).decode("ascii"),
        "tag": base64.b64encode(tag).decode("ascii"),
    }


def decrypt_secret(encrypted: dict[str, str], key: str | None = None) -> str:
    aesgcm = AESGCM(_load_key(key))
    try:
        iv = base64.b64decode(encrypted["iv"])
        sealed = base64.b64decode(encrypted["content"]) + base64.b64decode(encrypted["tag"])
        return aesgcm.decrypt(iv, sealed, None).decode("utf-8")
    except (KeyError, InvalidTag) as exc:
        raise SecretDecryptionError("stored gateway secret cannot be decrypted") from exc
