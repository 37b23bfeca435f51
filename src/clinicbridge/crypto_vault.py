"""Summary: Authenticated encryption for secrets stored at rest.

Importance: Keeps OAuth tokens and gateway auth tokens unreadable in SQLite.
Alternatives: Use a dedicated secrets manager or KMS envelope encryption.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from clinicbridge.errors import CryptoError


NONCE_BYTES = 12
KEY_BYTES = 32


@dataclass(frozen=True)
class EncryptedValue:
    """Summary: Base64 ciphertext and nonce pair.

    Importance: The only shape in which secrets are written to storage.
    Alternatives: Concatenate nonce and ciphertext into a single column.
    """

    ciphertext: str
    iv: str


class CryptoVault:
    """Summary: AES-256-GCM encryptor bound to a base64 master key.

    Importance: Gives every caller a fresh random nonce and tamper detection.
    Alternatives: Use Fernet or a keystream obfuscation layer.
    """

    def __init__(self, master_key: str | None) -> None:
        """Summary: Initialize with a base64-encoded 32-byte master key.

        Importance: Key problems surface as CryptoError on first use, not at wiring time.
        Alternatives: Validate the key eagerly during application startup.
        """

        self._master_key = master_key

    def encrypt(self, plaintext: str) -> EncryptedValue:
        """Summary: Encrypt plaintext with a new random nonce.

        Importance: Nonces are never reused for a given key.
        Alternatives: Derive nonces from a counter persisted alongside the key.
        """

        cipher = AESGCM(self._key())
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedValue(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(nonce).decode("ascii"),
        )

    def decrypt(self, ciphertext: str, iv: str) -> str:
        """Summary: Decrypt and authenticate a stored ciphertext.

        Importance: Tampered data or a wrong key raises CryptoError instead of garbage.
        Alternatives: Return None for undecryptable values.
        """

        cipher = AESGCM(self._key())
        try:
            nonce = base64.b64decode(iv, validate=True)
            data = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CryptoError("Stored ciphertext is not valid base64") from exc
        if len(nonce) != NONCE_BYTES:
            raise CryptoError("Stored nonce has an invalid length")
        try:
            plaintext = cipher.decrypt(nonce, data, None)
        except InvalidTag as exc:
            raise CryptoError("Ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")

    def _key(self) -> bytes:
        if not self._master_key:
            raise CryptoError("Encryption master key is not configured")
        try:
            key = base64.b64decode(self._master_key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CryptoError("Encryption master key is not valid base64") from exc
        if len(key) != KEY_BYTES:
            raise CryptoError("Encryption master key must decode to 32 bytes")
        return key


def encrypt(plaintext: str, master_key: str | None) -> EncryptedValue:
    """Encrypt with a one-off vault for the given master key."""

    return CryptoVault(master_key).encrypt(plaintext)


def decrypt(ciphertext: str, iv: str, master_key: str | None) -> str:
    """Decrypt with a one-off vault for the given master key."""

    return CryptoVault(master_key).decrypt(ciphertext, iv)


def generate_master_key() -> str:
    """Summary: Create a new random base64 master key.

    Importance: Used by the CLI to bootstrap deployments.
    Alternatives: Generate keys with openssl rand -base64 32.
    """

    return base64.b64encode(os.urandom(KEY_BYTES)).decode("ascii")
