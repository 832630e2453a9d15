# provisioning_engine/vault/vault.py
"""Credential vault - symmetric encryption of secrets stored at rest."""

import binascii
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from provisioning_engine.core.errors import DataIntegrityError, ValidationError
from provisioning_engine.core.models import EncryptedData


IV_LENGTH = 12
KEY_LENGTH = 32


def derive_key(secret: str, salt: str, iterations: int) -> bytes:
    """Deterministic 256-bit key from the process-wide secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """
    AES-256-GCM over a PBKDF2-derived key.

    Every call to ``encrypt`` uses a fresh random IV. A failed decryption
    raises DataIntegrityError, it never yields a substitute value.
    """

    def __init__(self, secret: str, *, salt: str = "provisioning-engine", iterations: int = 200_000):
        if not secret:
            raise ValidationError("vault secret is required")
        self._aesgcm = AESGCM(derive_key(secret, salt, iterations))

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        return cls(
            settings.vault_secret,
            salt=settings.vault_salt,
            iterations=settings.vault_iterations,
        )

    def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedData:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        iv = os.urandom(IV_LENGTH)
        ciphertext = self._aesgcm.encrypt(iv, data, None)
        return EncryptedData(iv=iv.hex(), encrypted_data=ciphertext.hex())

    def decrypt(self, encrypted: EncryptedData) -> bytes:
        if encrypted is None:
            raise DataIntegrityError("No encrypted value to decrypt")
        try:
            iv = bytes.fromhex(encrypted.iv)
            ciphertext = bytes.fromhex(encrypted.encrypted_data)
        except (ValueError, TypeError, binascii.Error) as e:
            raise DataIntegrityError("Encrypted value is not valid hex") from e

        if len(iv) != IV_LENGTH:
            raise DataIntegrityError(f"Invalid IV length: {len(iv)}")

        try:
            return self._aesgcm.decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise DataIntegrityError("Decryption failed: wrong key, IV or tampered ciphertext") from e

    def decrypt_text(self, encrypted: EncryptedData) -> str:
        try:
            return self.decrypt(encrypted).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DataIntegrityError("Decrypted value is not valid UTF-8") from e
