"""
Abstract token store interface.
Defines the contract for persisting the access token, refresh token and
cached user snapshot under three fixed keys.

Version: 1.0.0
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict, Optional

from ..models.schemas import User
from ..utils.encryption import TokenEncryption, EncryptionError
from .validators import (
    StoredSession,
    STORAGE_KEYS,
    TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    USER_KEY,
    serialize_user,
)

logger = logging.getLogger(__name__)


class TokenStoreError(Exception):
    """Raised when the backing storage cannot be read or written."""
    pass


class TokenStore(ABC):
    """
    Abstract base class for durable credential storage.

    Implementations provide raw string get/set/remove for a key; this base
    class layers on optional encryption, the StoredSession view and the
    read-modify-write lock.
    """

    store_type = "abstract"

    def __init__(self, encryptor: Optional[TokenEncryption] = None):
        """
        Args:
            encryptor: Optional cipher applied to every persisted value
        """
        self.encryptor = encryptor
        self._write_lock = asyncio.Lock()

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """
        Get the raw stored value for a key.

        Returns:
            Stored string or None if the key is absent
        """
        pass

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store a raw value under a key."""
        pass

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Remove a key; removing an absent key is not an error."""
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """
        Get token store statistics.

        Returns:
            Dictionary with statistics
        """
        pass

    def lock(self) -> AsyncContextManager:
        """
        Mutual exclusion around read-modify-write of the stored tokens.

        In-process stores use an asyncio lock; shared stores override this
        with a lock visible to every process using the same storage.
        """
        return self._write_lock

    async def close(self) -> None:
        """Release backend resources."""
        return None

    # ===========================
    # Encoding
    # ===========================

    def _encode(self, value: str) -> str:
        if self.encryptor:
            return self.encryptor.encrypt_string(value)
        return value

    def _decode(self, key: str, value: Optional[str]) -> Optional[str]:
        if value is None or not self.encryptor:
            return value

        try:
            return self.encryptor.decrypt_string(value)
        except EncryptionError:
            # Unreadable with the current key: treat as absent.
            logger.warning(f"Stored value for '{key}' could not be decrypted, ignoring it")
            return None

    # ===========================
    # Session view
    # ===========================

    async def load(self) -> StoredSession:
        """Read the three persisted values."""
        items = {}
        for key in STORAGE_KEYS:
            items[key] = self._decode(key, await self.get_item(key))

        stored = StoredSession.from_items(items)
        logger.debug(
            f"Loaded stored session (token={'yes' if stored.access_token else 'no'}, "
            f"refresh={'yes' if stored.refresh_token else 'no'}, "
            f"user={'yes' if stored.user else 'no'})"
        )
        return stored

    async def save(self, stored: StoredSession) -> None:
        """Persist all three values; None entries remove their key."""
        for key, value in stored.to_items().items():
            if value is None:
                await self.remove_item(key)
            else:
                await self.set_item(key, self._encode(value))

    async def save_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        await self.set_item(TOKEN_KEY, self._encode(access_token))
        if refresh_token:
            await self.set_item(REFRESH_TOKEN_KEY, self._encode(refresh_token))
        else:
            await self.remove_item(REFRESH_TOKEN_KEY)

    async def save_user(self, user: User) -> None:
        await self.set_item(USER_KEY, self._encode(serialize_user(user)))

    async def clear(self) -> None:
        """Remove every persisted value (signed-out state)."""
        for key in STORAGE_KEYS:
            await self.remove_item(key)
        logger.debug("Token store cleared")

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check on the token store.

        Returns:
            Dictionary with health status
        """
        try:
            stats = await self.get_stats()
            stored = await self.load()
            return {
                "healthy": True,
                "signed_in": stored.access_token is not None,
                "stats": stats
            }
        except Exception as e:
            logger.error(f"Token store health check failed: {e}")
            return {
                "healthy": False,
                "error": str(e)
            }


__all__ = ['TokenStore', 'TokenStoreError', 'StoredSession']
