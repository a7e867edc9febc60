# =============================================================================
# Field Cipher — AES-GCM Encryption for Checkpoint Fields
# =============================================================================
#
# Each sensitive field is JSON-encoded and encrypted on its own with a
# fresh 96-bit random nonce per field per write. The stored token is:
#
#   base64( nonce (12 bytes) ‖ ciphertext+tag )
#
# AES-GCM is authenticated: a wrong key or a tampered token fails the tag
# check and raises DecryptionFailed instead of returning garbage.
#
# DESIGN DECISION: `cryptography`'s AESGCM primitive over Fernet.
# The stored format (nonce ‖ ciphertext, base64) is fixed by the checkpoint
# row contract and must stay readable by non-Python consumers. Fernet
# adds its own versioned envelope and uses AES-CBC + HMAC.
# =============================================================================

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class DecryptionFailed(Exception):
    """Token is malformed or failed authentication (e.g., rotated key)."""


class FieldCipher:
    """Encrypts JSON-serialisable values to base64 tokens and back."""

    def __init__(self, key: bytes) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError(
                f"AES key must be 16, 24 or 32 bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded_key: str) -> FieldCipher:
        """
        Build a cipher from a base64 key (as stored in settings).

        Raises:
            ValueError: If the key is empty, not base64, or the wrong length.
        """
        if not encoded_key:
            raise ValueError(
                "No checkpoint encryption key configured. "
                "Set CHECKPOINT_ENCRYPTION_KEY in .env"
            )
        try:
            key = base64.b64decode(encoded_key, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Encryption key is not valid base64: {e}") from e
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        """New random 256-bit key, base64-encoded."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()

    def encrypt(self, value: Any) -> str:
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(value, separators=(",", ":")).encode("utf-8")
        ciphertext = self._aead.encrypt(nonce, plaintext, None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> Any:
        """
        Reverse encrypt().

        Raises:
            DecryptionFailed: Malformed token or authentication failure.
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed(f"not base64: {e}") from e
        if len(raw) <= NONCE_SIZE:
            raise DecryptionFailed("token too short")

        nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionFailed("authentication failed") from e
        return json.loads(plaintext.decode("utf-8"))
