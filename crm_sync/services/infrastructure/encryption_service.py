"""
Encryption for stored mailbox OAuth tokens.
Uses Fernet symmetric encryption; ciphertext is stored as text columns.
"""

from cryptography.fernet import Fernet, InvalidToken

from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""


class TokenCipher:
    """Encrypts and decrypts OAuth tokens with a configured Fernet key."""

    def __init__(self, key: str | None):
        if not key:
            raise EncryptionError("ENCRYPTION_KEY not configured in environment")

        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except Exception as e:
            logger.error("Failed to initialize Fernet cipher", error=str(e))
            raise EncryptionError(f"Invalid encryption key: {e}") from e

    def encrypt(self, token: str) -> str:
        """
        Encrypt a token string for database storage.

        Raises:
            EncryptionError: If the token is empty or encryption fails
        """
        if not token or not isinstance(token, str):
            raise EncryptionError("Token must be a non-empty string")

        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, encrypted_token: str) -> str:
        """
        Decrypt a token read from database storage.

        Raises:
            EncryptionError: If decryption fails or token is invalid
        """
        if not encrypted_token or not isinstance(encrypted_token, str):
            raise EncryptionError("Encrypted token must be a non-empty string")

        try:
            return self._fernet.decrypt(encrypted_token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Token decryption failed - invalid token")
            raise EncryptionError("Invalid or corrupted token") from e


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Use this for initial setup or key rotation and store the result in
    ENCRYPTION_KEY.
    """
    return Fernet.generate_key().decode("utf-8")
