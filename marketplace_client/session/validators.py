"""
Validated view of the persisted session.

Version: 1.0.0
"""
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..models.schemas import User

logger = logging.getLogger(__name__)

# Fixed storage keys; absence of TOKEN_KEY means "signed out" on cold start.
TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_KEY = "user"

STORAGE_KEYS = (TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY)


class StoredSession(BaseModel):
    """
    Snapshot of the three persisted values.

    The persisted record may legitimately hold a token without a cached user
    (for example after a refresh that did not return one); pairing of token
    and user is enforced by SessionManager, not here.
    """

    access_token: Optional[str] = Field(None, description="Bearer access token")
    refresh_token: Optional[str] = Field(None, description="Refresh token")
    user: Optional[User] = Field(None, description="Cached identity snapshot")

    @field_validator('access_token', 'refresh_token')
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def is_empty(self) -> bool:
        return not (self.access_token or self.refresh_token or self.user)

    def to_items(self) -> Dict[str, Optional[str]]:
        """Storage key -> serialized value (None means remove the key)."""
        return {
            TOKEN_KEY: self.access_token,
            REFRESH_TOKEN_KEY: self.refresh_token,
            USER_KEY: serialize_user(self.user) if self.user else None,
        }

    @classmethod
    def from_items(cls, items: Dict[str, Optional[str]]) -> 'StoredSession':
        """
        Build from raw storage values.

        A corrupted user snapshot is dropped with a warning rather than
        failing the whole load.
        """
        return cls(
            access_token=items.get(TOKEN_KEY),
            refresh_token=items.get(REFRESH_TOKEN_KEY),
            user=deserialize_user(items.get(USER_KEY)),
        )


def serialize_user(user: User) -> str:
    return user.model_dump_json(exclude_none=True)


def deserialize_user(raw: Optional[str]) -> Optional[User]:
    if not raw:
        return None

    try:
        data: Any = json.loads(raw)
        return User.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Ignoring corrupted cached user snapshot: {e}")
        return None


__all__ = [
    'StoredSession',
    'TOKEN_KEY',
    'REFRESH_TOKEN_KEY',
    'USER_KEY',
    'STORAGE_KEYS',
    'serialize_user',
    'deserialize_user',
]
