"""
Data models for the marketplace client.
"""
from .schemas import (
    User,
    LoginRequest,
    RegisterRequest,
    RefreshRequest,
    TokenPair,
    AuthResponse,
)
from .chat import (
    MessageDirection,
    ConnectionState,
    EnvelopeType,
    ChatMessage,
    OutboundEnvelope,
    InboundEnvelope,
)

__all__ = [
    "User",
    "LoginRequest",
    "RegisterRequest",
    "RefreshRequest",
    "TokenPair",
    "AuthResponse",
    "MessageDirection",
    "ConnectionState",
    "EnvelopeType",
    "ChatMessage",
    "OutboundEnvelope",
    "InboundEnvelope",
]
