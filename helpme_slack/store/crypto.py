"""AES-256-GCM encryption for backend chat tokens at rest.

WHY: The HelpMe chat token is a bearer credential. It must be retrievable
verbatim for outbound calls, but it should never sit in the database as
plaintext next to course caches and preferences.

HOW: cryptography's AESGCM with a 12-byte random nonce per value. The
stored payload is base64(nonce || tag || ciphertext), the same layout the
legacy single-token table used, so migrated rows decrypt unchanged.

RULES:
- Key is 32 raw bytes (see config.decode_encryption_key)
- A fresh nonce is generated for every encrypt() call
- decrypt() raises TokenDecryptionError for tampered or foreign payloads
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_NONCE_LEN = 12
_TAG_LEN = 16


class TokenDecryptionError(ValueError):
    """Raised when a stored token cannot be decrypted with the current key."""


class TokenCipher:
    """Encrypts and decrypts short secrets with a single AES-256 key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("TokenCipher requires a 32-byte key")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_LEN)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; store it in front of the ciphertext
        ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, payload: str) -> str:
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise TokenDecryptionError("Stored token is not valid base64")
        if len(raw) < _NONCE_LEN + _TAG_LEN:
            raise TokenDecryptionError("Stored token payload is truncated")

        nonce = raw[:_NONCE_LEN]
        tag = raw[_NONCE_LEN:_NONCE_LEN + _TAG_LEN]
        ciphertext = raw[_NONCE_LEN + _TAG_LEN:]
        try:
            plain = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise TokenDecryptionError("Stored token failed authentication")
        return plain.decode("utf-8")
