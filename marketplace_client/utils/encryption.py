"""
Encryption of persisted credentials.
Tokens written to durable storage are Fernet-encrypted when a key is configured.

Version: 1.0.0
"""
import base64
import logging
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KDF_SALT = b"marketplace_client_token_store_v1"
KDF_ITERATIONS = 390000


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


class TokenEncryption:
    """
    Symmetric encryption for token store values.

    Accepts either a urlsafe-base64 Fernet key or an arbitrary passphrase;
    a passphrase is stretched into a Fernet key with PBKDF2-SHA256.
    """

    def __init__(self, encryption_key: Union[str, bytes]):
        if not encryption_key:
            raise EncryptionError("Encryption key must not be empty")

        key_bytes = encryption_key.encode() if isinstance(encryption_key, str) else encryption_key

        try:
            self.cipher = Fernet(key_bytes)
            logger.debug("Token cipher initialized with provided Fernet key")
        except (ValueError, TypeError):
            logger.debug("Deriving token cipher key from passphrase")
            self.cipher = Fernet(self._derive_key(key_bytes))

    @staticmethod
    def _derive_key(passphrase: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase))

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key as a string."""
        return Fernet.generate_key().decode()

    def encrypt_string(self, data: str) -> str:
        """
        Encrypt a string value.

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            return self.cipher.encrypt(data.encode("utf-8")).decode("ascii")
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Encryption failed: {e}") from e

    def decrypt_string(self, encrypted_data: str) -> str:
        """
        Decrypt a value produced by encrypt_string.

        Raises:
            EncryptionError: If the key is wrong or the data is corrupted
        """
        try:
            return self.cipher.decrypt(encrypted_data.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Decryption failed: invalid token (wrong key or corrupted data)")
            raise EncryptionError("Decryption failed: invalid token") from e
        except (UnicodeError, ValueError) as e:
            logger.error(f"Decryption failed: {e}")
            raise EncryptionError(f"Decryption failed: {e}") from e

    def verify_key(self, test_data: str = "test") -> bool:
        """Check the key with an encrypt/decrypt roundtrip."""
        try:
            return self.decrypt_string(self.encrypt_string(test_data)) == test_data
        except EncryptionError:
            return False


def create_encryption_instance(
    encryption_key: Optional[Union[str, bytes]] = None
) -> Optional[TokenEncryption]:
    """Build a cipher for the given key, or None when encryption is disabled."""
    if not encryption_key:
        return None
    return TokenEncryption(encryption_key)


__all__ = [
    'TokenEncryption',
    'EncryptionError',
    'create_encryption_instance',
]
