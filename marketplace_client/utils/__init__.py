"""
Utility modules for the client.
Provides token encryption and retry/backoff helpers.

Version: 1.0.0
"""
from .encryption import (
    TokenEncryption,
    EncryptionError,
    create_encryption_instance
)
from .retry import (
    RetryConfig,
    BackoffKind,
    retry_async_call
)

__all__ = [
    # Encryption
    'TokenEncryption',
    'EncryptionError',
    'create_encryption_instance',

    # Retry
    'RetryConfig',
    'BackoffKind',
    'retry_async_call',
]
