"""
In-memory token store implementation.
Suitable for tests and short-lived scripts.

Version: 1.0.0
"""
import logging
from typing import Any, Dict, Optional

from ..utils.encryption import TokenEncryption
from .token_store import TokenStore

logger = logging.getLogger(__name__)


class InMemoryTokenStore(TokenStore):
    """
    In-memory implementation of TokenStore.

    Limitations:
    - Credentials are lost on restart
    - Not shared across processes
    """

    store_type = "in_memory"

    def __init__(
        self,
        initial: Optional[Dict[str, str]] = None,
        encryptor: Optional[TokenEncryption] = None
    ):
        """
        Initialize in-memory token store.

        Args:
            initial: Raw key/value pairs to seed the store with
            encryptor: Optional cipher for stored values
        """
        super().__init__(encryptor=encryptor)
        self.items: Dict[str, str] = dict(initial or {})
        logger.info(f"InMemoryTokenStore initialized (keys={len(self.items)})")

    async def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    async def remove_item(self, key: str) -> None:
        self.items.pop(key, None)

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "store_type": self.store_type,
            "keys": sorted(self.items),
            "encryption": self.encryptor is not None
        }


__all__ = ['InMemoryTokenStore']
