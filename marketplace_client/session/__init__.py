"""
Credential persistence package.
Provides token store abstractions for the signed-in identity.

Version: 1.0.0
"""
from typing import Optional

from ..config import Settings
from ..utils.encryption import create_encryption_instance
from .token_store import TokenStore, TokenStoreError
from .validators import (
    StoredSession,
    TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    USER_KEY,
    STORAGE_KEYS
)
from .in_memory_token_store import InMemoryTokenStore
from .file_token_store import FileTokenStore
from .redis_token_store import RedisTokenStore
from .distributed_lock import (
    DistributedLock,
    LockAcquisitionError,
    LockReleaseError
)


def create_token_store(
    store_type: str = "file",
    encryption_key: Optional[str] = None,
    **kwargs
) -> TokenStore:
    """
    Factory function to create a token store.

    Args:
        store_type: Type of store ('in_memory', 'file' or 'redis')
        encryption_key: Optional Fernet key or passphrase
        **kwargs: Store-specific configuration

    Returns:
        TokenStore instance

    Examples:
        store = create_token_store('file', path='~/.marketplace_client/session.json')

        store = create_token_store(
            'redis',
            redis_url='redis://localhost:6379/0',
            encryption_key='your-key-here'
        )
    """
    encryptor = create_encryption_instance(encryption_key)

    if store_type == "in_memory":
        return InMemoryTokenStore(encryptor=encryptor, **kwargs)

    elif store_type == "file":
        return FileTokenStore(encryptor=encryptor, **kwargs)

    elif store_type == "redis":
        return RedisTokenStore(encryptor=encryptor, **kwargs)

    else:
        raise ValueError(f"Unknown store type: {store_type}")


def create_token_store_from_settings(settings: Settings) -> TokenStore:
    """Build the token store selected by the client settings."""
    encryption_key = settings.get_encryption_key()

    if settings.token_store_type == "file":
        return create_token_store("file", encryption_key, path=settings.token_store_path)

    if settings.token_store_type == "redis":
        return create_token_store(
            "redis",
            encryption_key,
            redis_url=settings.redis_url,
            key_prefix=settings.token_store_key_prefix
        )

    return create_token_store("in_memory", encryption_key)


__all__ = [
    # Core
    'TokenStore',
    'TokenStoreError',
    'StoredSession',
    'TOKEN_KEY',
    'REFRESH_TOKEN_KEY',
    'USER_KEY',
    'STORAGE_KEYS',

    # Implementations
    'InMemoryTokenStore',
    'FileTokenStore',
    'RedisTokenStore',

    # Distributed locking
    'DistributedLock',
    'LockAcquisitionError',
    'LockReleaseError',

    # Factory
    'create_token_store',
    'create_token_store_from_settings',
]
