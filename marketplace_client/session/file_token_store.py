"""
File-backed token store implementation.
Durable local storage: persisted credentials survive a process restart.

Version: 1.0.0
"""
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles
import aiofiles.os

from ..utils.encryption import TokenEncryption
from .token_store import TokenStore, TokenStoreError
from .validators import StoredSession

logger = logging.getLogger(__name__)


class FileTokenStore(TokenStore):
    """
    JSON file implementation of TokenStore.

    Features:
    - Atomic writes (temp file + rename), so a crash never leaves a
      half-written file
    - File created with 0600 permissions
    - Unreadable or corrupted files are treated as signed out
    """

    store_type = "file"

    def __init__(
        self,
        path: Union[str, Path],
        encryptor: Optional[TokenEncryption] = None
    ):
        """
        Initialize file token store.

        Args:
            path: Location of the JSON file (``~`` is expanded)
            encryptor: Optional cipher for stored values
        """
        super().__init__(encryptor=encryptor)
        self.path = Path(path).expanduser()
        logger.info(f"FileTokenStore initialized (path={self.path})")

    # ===========================
    # File I/O
    # ===========================

    @staticmethod
    def _private_opener(path: str, flags: int) -> int:
        return os.open(path, flags, 0o600)

    async def _read_all(self) -> Dict[str, str]:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise TokenStoreError(f"Cannot read token store {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Token store {self.path} is corrupted, treating as empty: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Token store {self.path} has unexpected content, treating as empty")
            return {}

        return {k: v for k, v in data.items() if isinstance(v, str)}

    async def _write_all(self, items: Dict[str, str]) -> None:
        # Write a sibling temp file, then rename over the target.
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(
                tmp_path, "w", encoding="utf-8", opener=self._private_opener
            ) as f:
                await f.write(json.dumps(items))
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path.exists():
                await aiofiles.os.remove(tmp_path)
            raise TokenStoreError(f"Cannot write token store {self.path}: {e}") from e

        logger.debug(f"Token store written ({len(items)} keys)")

    # ===========================
    # TokenStore API
    # ===========================

    async def get_item(self, key: str) -> Optional[str]:
        return (await self._read_all()).get(key)

    async def set_item(self, key: str, value: str) -> None:
        items = await self._read_all()
        items[key] = value
        await self._write_all(items)

    async def remove_item(self, key: str) -> None:
        items = await self._read_all()
        if key in items:
            del items[key]
            await self._write_all(items)

    async def save(self, stored: StoredSession) -> None:
        """Persist all three values in a single write."""
        items = await self._read_all()
        for key, value in stored.to_items().items():
            if value is None:
                items.pop(key, None)
            else:
                items[key] = self._encode(value)
        await self._write_all(items)

    async def clear(self) -> None:
        """Remove the file entirely."""
        try:
            await aiofiles.os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TokenStoreError(f"Cannot remove token store {self.path}: {e}") from e
        logger.debug(f"Token store {self.path} removed")

    async def get_stats(self) -> Dict[str, Any]:
        items = await self._read_all()
        return {
            "store_type": self.store_type,
            "path": str(self.path),
            "exists": self.path.exists(),
            "keys": sorted(items),
            "encryption": self.encryptor is not None
        }


__all__ = ['FileTokenStore']
