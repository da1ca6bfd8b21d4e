"""Authenticated encryption of stored secrets with AES-256-GCM."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_NONCE_SIZE = 12


class SecretManager:
    """Encrypts strings to base64 text holding a nonce followed by the sealed data."""

    def __init__(self, key: str | bytes) -> None:
        raw_key = key.encode() if isinstance(key, str) else bytes(key)
        if len(raw_key) != 32:
            raise ValueError("secret key must be 32 bytes")
        self._aead = AESGCM(raw_key)

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt plaintext with a fresh random nonce."""
        nonce = os.urandom(_NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8", "surrogateescape"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt_string(self, ciphertext: str) -> str:
        """Decrypt text produced by encrypt_string; raise ValueError on any failure."""
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid base64 ciphertext: {exc}") from exc
        if len(raw) < _NONCE_SIZE:
            raise ValueError("ciphertext too short")
        nonce, sealed = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise ValueError("message authentication failed") from exc
        return plaintext.decode("utf-8", "surrogateescape")