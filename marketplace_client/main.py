"""
Client entry point.
Wires settings, token store, API client and session manager together and
manages their lifecycle.

Version: 1.0.0
"""
import logging
from typing import List, Optional

from .config import Settings, get_settings
from .services.api_client import ApiClient, NotAuthenticatedError
from .services.auth_service import SessionManager
from .services.chat_session import ChatSession, ChatConnectionError
from .session import TokenStore, create_token_store_from_settings
from .utils.retry import RetryConfig

logger = logging.getLogger(__name__)


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )


class ClientContext:
    """
    Application-scoped client.

    Startup builds every component once and restores the persisted session;
    shutdown closes sockets, HTTP connections and the token store.

        async with ClientContext() as client:
            if not client.session_manager.is_authenticated:
                await client.session_manager.login({"email": ..., "password": ...})
            chat = await client.open_chat("agent-42")
            await chat.send("Hello")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_store: Optional[TokenStore] = None,
        api_client: Optional[ApiClient] = None
    ):
        self.settings = settings or get_settings()
        self.token_store = token_store or create_token_store_from_settings(self.settings)
        self.api_client = api_client or ApiClient(
            self.settings.api_base_url,
            timeout=self.settings.request_timeout
        )
        self.session_manager = SessionManager(self.api_client, self.token_store)
        self._chats: List[ChatSession] = []
        self.started = False

    async def start(self) -> None:
        """Restore the persisted session. Safe to call more than once."""
        if self.started:
            return

        logger.info("=" * 60)
        logger.info(f"Starting {self.settings.app_name} v{self.settings.app_version}")
        logger.info(f"API: {self.settings.api_base_url}")
        logger.info(f"Token store: {self.token_store.store_type}")
        logger.info("=" * 60)

        user = await self.session_manager.initialize()
        if user is not None:
            logger.info(f"Restored session for {user.display_name}")
        else:
            logger.info("Starting signed out")

        self.started = True

    async def shutdown(self) -> None:
        """Close every resource owned by the client."""
        logger.info("Shutting down client...")

        for chat in self._chats:
            try:
                await chat.close()
            except Exception as e:
                logger.error(f"Error closing chat session: {e}", exc_info=True)
        self._chats.clear()

        try:
            await self.api_client.close()
        except Exception as e:
            logger.error(f"Error closing API client: {e}", exc_info=True)

        try:
            await self.token_store.close()
        except Exception as e:
            logger.error(f"Error closing token store: {e}", exc_info=True)

        self.started = False
        logger.info("Client shutdown complete")

    async def __aenter__(self) -> "ClientContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    # ===========================
    # Chat
    # ===========================

    async def create_chat_session(self, **kwargs) -> ChatSession:
        """Build an idle chat session sharing the API client's HTTP session."""
        options = {
            "chat_path": self.settings.ws_chat_path,
            "token_provider": self.session_manager.bearer_token,
            "http_session": await self.api_client.get_http_session(),
            "typing_timeout": self.settings.typing_timeout,
            "reconnect_config": RetryConfig(
                max_attempts=self.settings.reconnect_max_attempts,
                initial_delay=self.settings.reconnect_initial_delay,
                max_delay=self.settings.reconnect_max_delay,
                jitter=0.1,
                retry_on_exceptions=(ChatConnectionError,)
            ),
        }
        options.update(kwargs)

        chat = ChatSession(self.settings.get_ws_base_url(), **options)
        self._chats.append(chat)
        return chat

    async def open_chat(self, agent_id: str, **kwargs) -> ChatSession:
        """
        Open a chat with ``agent_id`` as the signed-in user.

        Raises:
            NotAuthenticatedError: Nobody is signed in
            ChatConnectionError: The WebSocket could not be established
        """
        user = self.session_manager.user
        if user is None:
            raise NotAuthenticatedError("Sign in before opening a chat")

        chat = await self.create_chat_session(**kwargs)
        await chat.open(agent_id, user)
        return chat


__all__ = ['ClientContext', 'setup_logging']
