"""
Client services: REST API access, session management and agent chat.
"""
from .api_client import (
    ApiClient,
    AuthProvider,
    ApiError,
    AuthError,
    SessionExpiredError,
    NotAuthenticatedError,
    InvalidRequestError,
    ServerError,
    NetworkError,
)
from .auth_service import SessionManager, AuthSession
from .chat_session import (
    ChatSession,
    ChatSessionError,
    ChatConnectionError,
    build_chat_url,
)

__all__ = [
    'ApiClient',
    'AuthProvider',
    'ApiError',
    'AuthError',
    'SessionExpiredError',
    'NotAuthenticatedError',
    'InvalidRequestError',
    'ServerError',
    'NetworkError',
    'SessionManager',
    'AuthSession',
    'ChatSession',
    'ChatSessionError',
    'ChatConnectionError',
    'build_chat_url',
]
