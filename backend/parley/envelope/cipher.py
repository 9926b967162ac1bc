"""Symmetric JSON envelope encryption (AES-256-GCM).

Token layout (padded urlsafe base64):

    nonce (12 bytes) || ciphertext || tag (16 bytes)

The AES key is the SHA-256 digest of the configured secret, so any
non-empty passphrase yields a valid 256-bit key. GCM authenticates the
ciphertext: a tampered token or one sealed under another key fails with
:class:`DecryptionError` before any plaintext is produced.
"""
import base64
import binascii
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from parley.errors import DecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


def derive_key(secret: str) -> bytes:
    """Derive a 256-bit AES key from a passphrase."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(secret.encode("utf-8"))
    return digest.finalize()


class EnvelopeCipher:
    """Encrypts JSON-serializable values into opaque strings and back."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Envelope secret must not be empty")
        self._aes = AESGCM(derive_key(secret))

    def encrypt(self, value: Any) -> str:
        """Serialize *value* as JSON and seal it.

        Args:
            value: Any JSON-serializable value. ``datetime`` and other
                objects are not accepted; callers serialize them first.

        Returns:
            Urlsafe base64 token.
        """
        plaintext = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aes.encrypt(nonce, plaintext, None)
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> Any:
        """Open a token produced by :meth:`encrypt`.

        Raises:
            DecryptionError: If the token is malformed, tampered with,
                sealed under a different key, or not JSON inside.
        """
        if not isinstance(token, str) or not token:
            raise DecryptionError()
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError):
            raise DecryptionError() from None
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError()
        try:
            plaintext = self._aes.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag:
            raise DecryptionError() from None
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise DecryptionError() from None
