"""Encryption at rest for pixel access tokens / API secrets."""

from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_IV_BYTES = 12
_TAG_BYTES = 16


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class CredentialCipher:
    """
    AES-256-GCM with a key derived from the app secret (SHA-256).

    Packed format: ``b64url(iv).b64url(tag).b64url(ciphertext)``.
    """

    def __init__(self, secret: str | None):
        self._key = hashlib.sha256((secret or "missing").encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        sealed = AESGCM(self._key).encrypt(iv, plaintext.encode("utf-8"), None)
        data, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return ".".join([_b64url_encode(iv), _b64url_encode(tag), _b64url_encode(data)])

    def decrypt(self, packed: str) -> str:
        parts = (packed or "").split(".")
        if len(parts) != 3 or not all(parts[:2]):
            raise ValueError("Bad encrypted payload")
        try:
            iv, tag, data = (_b64url_decode(p) for p in parts)
        except (ValueError, TypeError) as e:
            raise ValueError("Bad encrypted payload") from e
        try:
            plain = AESGCM(self._key).decrypt(iv, data + tag, None)
        except InvalidTag as e:
            raise ValueError("Encrypted payload failed authentication") from e
        return plain.decode("utf-8")
