"""
Client configuration settings.
Loads connection, persistence and chat options from the environment.

Version: 1.0.0
"""
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit
import logging

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


TOKEN_STORE_TYPES = ("in_memory", "file", "redis")


class Settings(BaseSettings):
    """
    Client settings.

    Every field can be overridden with a ``MARKETPLACE_`` prefixed
    environment variable or an entry in a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="MARKETPLACE_",
        env_file=".env",
        extra="ignore",
    )

    # ===========================
    # Application
    # ===========================

    app_name: str = Field(
        default="Agent Marketplace Client",
        description="Application name used in log banners"
    )

    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )

    debug: bool = Field(
        default=False,
        description="Enable debug logging"
    )

    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    # ===========================
    # Backend API
    # ===========================

    api_base_url: str = Field(
        default="http://localhost:8080/api/v1",
        description="Base URL of the marketplace REST API"
    )

    ws_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for WebSocket connections (derived from api_base_url when unset)"
    )

    ws_chat_path: str = Field(
        default="/ws/chat",
        description="Path prefix of the per-agent chat socket"
    )

    request_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Total HTTP request timeout in seconds"
    )

    # ===========================
    # Token Persistence
    # ===========================

    token_store_type: str = Field(
        default="file",
        description="Token store backend: in_memory, file or redis"
    )

    token_store_path: str = Field(
        default="~/.marketplace_client/session.json",
        description="Location of the file token store"
    )

    token_store_key_prefix: str = Field(
        default="marketplace:session:",
        description="Key prefix for the redis token store"
    )

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the redis token store"
    )

    encryption_key: Optional[SecretStr] = Field(
        default=None,
        description="Fernet key or passphrase used to encrypt persisted tokens"
    )

    # ===========================
    # Chat
    # ===========================

    typing_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds before an unanswered typing indicator is cleared (None = never)"
    )

    reconnect_max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Connection attempts made by ChatSession.reopen()"
    )

    reconnect_initial_delay: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the first reconnection retry in seconds"
    )

    reconnect_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound on the reconnection delay in seconds"
    )

    @field_validator('api_base_url')
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        scheme = urlsplit(v).scheme
        if scheme not in ("http", "https"):
            raise ValueError(f"api_base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator('ws_base_url')
    @classmethod
    def validate_ws_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        scheme = urlsplit(v).scheme
        if scheme not in ("ws", "wss"):
            raise ValueError(f"ws_base_url must be a ws(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator('ws_chat_path')
    @classmethod
    def validate_ws_chat_path(cls, v: str) -> str:
        return "/" + v.strip("/")

    @field_validator('token_store_type')
    @classmethod
    def validate_token_store_type(cls, v: str) -> str:
        v = v.lower()
        if v not in TOKEN_STORE_TYPES:
            raise ValueError(
                f"token_store_type must be one of {', '.join(TOKEN_STORE_TYPES)}"
            )
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    def get_ws_base_url(self) -> str:
        """
        WebSocket base URL.

        The socket scheme mirrors the API transport: ``wss`` iff the API is
        served over ``https``.
        """
        if self.ws_base_url:
            return self.ws_base_url

        parts = urlsplit(self.api_base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return f"{scheme}://{parts.netloc}{parts.path}".rstrip("/")

    def get_encryption_key(self) -> Optional[str]:
        """Get encryption key value (use this instead of accessing field directly)."""
        if self.encryption_key:
            return self.encryption_key.get_secret_value()
        return None


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

__all__ = ['Settings', 'get_settings', 'settings', 'TOKEN_STORE_TYPES']
