"""Symmetric encryption for integration credentials stored in the database.

Values are sealed with AES-256-GCM. The key is derived from the
`ENCRYPTION_KEY` setting with PBKDF2-HMAC-SHA512 and a random per-value
salt, and the stored text is `base64(salt | iv | tag | ciphertext)`.
"""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config import settings

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100_000
MASK = "****"


class EncryptionError(RuntimeError):
    pass


def _secret() -> bytes:
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY environment variable is not set")
    return settings.ENCRYPTION_KEY.encode("utf-8")


def _derive_key(salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA512(), length=KEY_LENGTH, salt=salt, iterations=ITERATIONS)
    return kdf.derive(_secret())


def encrypt(plaintext: str) -> str:
    if plaintext is None:
        raise EncryptionError("cannot encrypt an empty value")
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_derive_key(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; the stored layout keeps it ahead of the ciphertext.
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt(token: str) -> str:
    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True)
    except (ValueError, AttributeError) as exc:
        raise EncryptionError("encrypted value is not valid base64") from exc
    header = SALT_LENGTH + IV_LENGTH + TAG_LENGTH
    if len(raw) < header:
        raise EncryptionError("encrypted value is truncated")
    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    tag = raw[SALT_LENGTH + IV_LENGTH:header]
    ciphertext = raw[header:]
    try:
        plain = AESGCM(_derive_key(salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise EncryptionError("failed to decrypt value (wrong key or corrupted data)") from exc
    return plain.decode("utf-8")


def mask(value: str | None) -> str | None:
    """Return the display mask for a stored secret, or None when unset."""
    return MASK if value else None
