"""
Chat transcript and WebSocket envelope models.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageDirection(str, Enum):
    """Who authored a transcript entry."""
    USER = "user"
    AGENT = "agent"


class ConnectionState(str, Enum):
    """Chat connection lifecycle: idle -> connecting -> open -> closed."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class EnvelopeType(str, Enum):
    """Frame types understood by the chat channel."""
    MESSAGE = "message"
    RESPONSE = "response"
    TYPING = "typing"


class ChatMessage(BaseModel):
    """A single transcript entry."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    direction: MessageDirection
    body: str
    sent_at: datetime = Field(default_factory=utcnow)


class OutboundEnvelope(BaseModel):
    """Frame sent for every user message."""
    type: str = EnvelopeType.MESSAGE.value
    agent_id: str
    user_id: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)

    def to_frame(self) -> dict:
        return self.model_dump(mode="json")


class InboundEnvelope(BaseModel):
    """
    Frame received from the agent.

    Only ``type`` is required; ``message`` is present on responses.
    """
    model_config = ConfigDict(extra="allow")

    type: str
    message: Optional[str] = None

    @field_validator('message', mode='before')
    @classmethod
    def stringify_message(cls, v: Any) -> Optional[str]:
        """Agents may reply with numbers or structured payloads; keep them as text."""
        if v is None or isinstance(v, str):
            return v
        return str(v)


__all__ = [
    'MessageDirection',
    'ConnectionState',
    'EnvelopeType',
    'ChatMessage',
    'OutboundEnvelope',
    'InboundEnvelope',
    'utcnow',
]
