"""Encryption of OAuth tokens stored on the sync configuration."""

import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenDecryptionError(ValueError):
    """Raised when a stored token cannot be decrypted with the current key."""


class EncryptionService:
    """Fernet (AES-128-CBC + HMAC) encryption for access and refresh tokens."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: URL-safe base64 Fernet key. If not provided, the
                          TOKEN_ENCRYPTION_KEY env var is used; without either
                          an ephemeral key is generated (tokens stored with it
                          become unreadable after a restart)
        """
        key = encryption_key or os.getenv('TOKEN_ENCRYPTION_KEY')
        if not key:
            logger.warning("TOKEN_ENCRYPTION_KEY not set, generating an ephemeral key")
            key = Fernet.generate_key().decode()

        self.cipher = Fernet(key.encode())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a token.

        Args:
            plaintext: The token to encrypt

        Returns:
            Fernet token as text, or None for an empty input
        """
        if not plaintext:
            return None
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Args:
            ciphertext: Value previously returned by encrypt()

        Returns:
            The plaintext token, or None for an empty input

        Raises:
            TokenDecryptionError: If the value was not produced with this key
        """
        if not ciphertext:
            return None
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptionError("Stored token could not be decrypted") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new key suitable for TOKEN_ENCRYPTION_KEY."""
        return Fernet.generate_key().decode()
