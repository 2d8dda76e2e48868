"""Symmetric encryption of custody private keys at rest."""
from __future__ import annotations

import binascii
import secrets

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import VAULT_KEY_BYTES, CustodySettings
from .errors import ConfigError, VaultError

IV_BYTES = 16
ENVELOPE_SEPARATOR = ":"


class KeyVault:
    """AES-256-CTR envelope encryption keyed by one process-wide secret.

    Envelopes are ``hex(iv) + ":" + hex(ciphertext)``. Every call to
    :meth:`encrypt` draws a fresh random IV; reusing an IV under CTR mode would
    leak the XOR of two plaintexts.
    """

    def __init__(self, secret_key: bytes) -> None:
        if not secret_key:
            raise ConfigError("Vault secret key is missing")
        if not isinstance(secret_key, (bytes, bytearray)) or len(secret_key) != VAULT_KEY_BYTES:
            raise ConfigError(f"Vault secret key must be exactly {VAULT_KEY_BYTES} bytes")
        self._key = bytes(secret_key)

    @classmethod
    def from_settings(cls, settings: CustodySettings) -> "KeyVault":
        return cls(settings.vault_key)

    def __repr__(self) -> str:
        return "KeyVault(key=<redacted>)"

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CTR(iv))

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be a string")
        iv = secrets.token_bytes(IV_BYTES)
        encryptor = self._cipher(iv).encryptor()
        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        return iv.hex() + ENVELOPE_SEPARATOR + ciphertext.hex()

    def decrypt(self, envelope: str) -> str:
        if not isinstance(envelope, str):
            raise VaultError("Encrypted envelope must be a string")
        parts = envelope.split(ENVELOPE_SEPARATOR)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise VaultError("Encrypted envelope is malformed")
        try:
            iv = binascii.unhexlify(parts[0])
            ciphertext = binascii.unhexlify(parts[1])
        except (binascii.Error, ValueError) as exc:
            raise VaultError("Encrypted envelope is not hex encoded") from exc
        if len(iv) != IV_BYTES:
            raise VaultError("Encrypted envelope carries an invalid IV")
        decryptor = self._cipher(iv).decryptor()
        raw = decryptor.update(ciphertext) + decryptor.finalize()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise VaultError("Decrypted key material is not valid UTF-8") from exc


__all__ = ["ENVELOPE_SEPARATOR", "IV_BYTES", "KeyVault"]
