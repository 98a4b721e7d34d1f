"""
Encryption Service for Landlord Payment Credentials

Landlords may bring their own Daraja (M-Pesa) app. Their consumer key,
consumer secret and passkey are stored encrypted and only decrypted when an
STK push is initiated on their behalf.

Uses Fernet symmetric encryption (AES-128-CBC) with PBKDF2 key derivation.
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.config import settings

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted or decrypted."""
    pass


class EncryptionService:
    """
    Encrypts and decrypts credential strings.

    The key is derived from ENCRYPTION_SECRET and ENCRYPTION_SALT. Encrypted
    values carry the ENC: prefix so plaintext rows from older imports are
    passed through unchanged.
    """

    # Prefix for encrypted values to identify them
    ENCRYPTED_PREFIX = "ENC:"

    def __init__(self, secret_key: Optional[str] = None, salt: Optional[str] = None):
        self._secret = secret_key or settings.ENCRYPTION_SECRET

        if not self._secret:
            # Values encrypted with a random key cannot be read after a restart
            logger.warning("ENCRYPTION_SECRET not set. Using a random key for this process")
            self._secret = Fernet.generate_key().decode()

        self._salt = (salt or settings.ENCRYPTION_SALT).encode()
        self._fernet = self._create_cipher()

    def _create_cipher(self) -> Fernet:
        """Create Fernet cipher from derived key."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self._salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(
            kdf.derive(self._secret.encode())
        )

        return Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string, returning ENC:<token>."""
        if not plaintext:
            return plaintext

        # Already encrypted?
        if plaintext.startswith(self.ENCRYPTED_PREFIX):
            return plaintext

        encrypted = self._fernet.encrypt(plaintext.encode())
        return f"{self.ENCRYPTED_PREFIX}{encrypted.decode()}"

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Values without the ENC: prefix are returned as-is.
        """
        if not ciphertext:
            return ciphertext

        if not ciphertext.startswith(self.ENCRYPTED_PREFIX):
            return ciphertext

        token = ciphertext[len(self.ENCRYPTED_PREFIX):]
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise EncryptionError("Decryption failed: Invalid token or key")

    def is_encrypted(self, value: Optional[str]) -> bool:
        return bool(value) and value.startswith(self.ENCRYPTED_PREFIX)


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get or create the global encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
