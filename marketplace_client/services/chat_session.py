"""
Real-time chat with a single agent over WebSocket.
"""
import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Callable, List, Optional, Union
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType
from pydantic import ValidationError

from ..models.chat import (
    ChatMessage,
    ConnectionState,
    EnvelopeType,
    InboundEnvelope,
    MessageDirection,
    OutboundEnvelope,
)
from ..models.schemas import User
from ..utils.retry import RetryConfig, retry_async_call

logger = logging.getLogger(__name__)

MessageListener = Callable[[ChatMessage], None]
StateListener = Callable[[ConnectionState], None]


class ChatSessionError(Exception):
    """Invalid use of a chat session."""
    pass


class ChatConnectionError(ChatSessionError):
    """The WebSocket could not be established."""
    pass


def build_chat_url(ws_base_url: str, agent_id: str, chat_path: str = "/ws/chat") -> str:
    """
    Build the chat endpoint for one agent.

    >>> build_chat_url("wss://api.example.com/api/v1", "agent-42")
    'wss://api.example.com/api/v1/ws/chat/agent-42'
    """
    path = "/" + chat_path.strip("/")
    return f"{ws_base_url.rstrip('/')}{path}/{quote(agent_id, safe='')}"


class ChatSession:
    """
    One conversation between the signed-in user and one agent.

    State machine: IDLE -> CONNECTING -> OPEN -> CLOSED. Deliberate close,
    remote close and transport errors all end in CLOSED; nothing reconnects
    automatically. reopen() is the explicit way back to OPEN for the same
    (user, agent) pair, keeping the transcript.
    """

    def __init__(
        self,
        ws_base_url: str,
        chat_path: str = "/ws/chat",
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        http_session: Optional[ClientSession] = None,
        typing_timeout: Optional[float] = None,
        reconnect_config: Optional[RetryConfig] = None,
        on_message: Optional[MessageListener] = None,
        on_state_change: Optional[StateListener] = None
    ):
        """
        Initialize chat session.

        Args:
            ws_base_url: WebSocket base URL (ws:// or wss://)
            chat_path: Chat endpoint path under the base URL
            token_provider: Returns the bearer token sent on the upgrade request
            http_session: Shared aiohttp session; a private one is created if omitted
            typing_timeout: Seconds after which an unanswered typing signal is
                cleared and the turn marked failed (None disables it)
            reconnect_config: Backoff policy used by reopen()
            on_message: Called with every appended transcript message
            on_state_change: Called with every connection state transition
        """
        self.ws_base_url = ws_base_url
        self.chat_path = chat_path
        self.token_provider = token_provider
        self.typing_timeout = typing_timeout
        self.reconnect_config = reconnect_config or RetryConfig(
            retry_on_exceptions=(ChatConnectionError,)
        )

        self._http_session = http_session
        self._owns_http_session = False
        self._ws: Optional[ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._typing_timer: Optional[asyncio.TimerHandle] = None

        self._message_listeners: List[MessageListener] = [on_message] if on_message else []
        self._state_listeners: List[StateListener] = [on_state_change] if on_state_change else []

        self.agent_id: Optional[str] = None
        self.user: Optional[User] = None
        self.state = ConnectionState.IDLE
        self.transcript: List[ChatMessage] = []
        self.agent_typing = False
        self.last_turn_failed = False

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    @property
    def url(self) -> Optional[str]:
        if self.agent_id is None:
            return None
        return build_chat_url(self.ws_base_url, self.agent_id, self.chat_path)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # ===========================
    # Internal state helpers
    # ===========================

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.debug(f"Chat {self.agent_id}: {self.state.value} -> {state.value}")
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Chat state listener failed: {e}", exc_info=True)

    def _append(self, message: ChatMessage) -> None:
        self.transcript.append(message)
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Chat message listener failed: {e}", exc_info=True)

    def _start_typing_timer(self) -> None:
        self._cancel_typing_timer()
        if self.typing_timeout is None:
            return
        loop = asyncio.get_running_loop()
        self._typing_timer = loop.call_later(self.typing_timeout, self._typing_expired)

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _typing_expired(self) -> None:
        self._typing_timer = None
        if not self.agent_typing:
            return
        logger.warning(
            f"Agent {self.agent_id} sent no response within {self.typing_timeout}s of typing"
        )
        self.agent_typing = False
        self.last_turn_failed = True

    # ===========================
    # Connection
    # ===========================

    async def open(self, agent_id: str, user: Optional[User]) -> None:
        """
        Open the channel for ``agent_id`` on behalf of ``user``.

        Raises:
            ChatSessionError: Missing agent/user or session already used
            ChatConnectionError: The WebSocket could not be established
        """
        if not agent_id or not agent_id.strip():
            raise ChatSessionError("agent_id is required")
        if user is None:
            raise ChatSessionError("An authenticated user is required to open a chat")
        if self.state != ConnectionState.IDLE:
            raise ChatSessionError(
                f"Chat session is {self.state.value}; create a new session or reopen()"
            )

        self.agent_id = agent_id
        self.user = user
        await self._connect()

    async def reopen(self) -> None:
        """
        Reconnect a closed session to the same agent, retrying with backoff.

        The transcript is kept.

        Raises:
            ChatSessionError: Session was never opened or is not closed
            ChatConnectionError: All reconnection attempts failed
        """
        if self.agent_id is None or self.user is None:
            raise ChatSessionError("Chat session was never opened")
        if self.state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            logger.debug(f"Chat {self.agent_id} already {self.state.value}, reopen ignored")
            return

        logger.info(f"Reopening chat with agent {self.agent_id}")
        await retry_async_call(self._connect, config=self.reconnect_config)

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)

        session = self._http_session
        if session is None or session.closed:
            session = ClientSession()
            self._http_session = session
            self._owns_http_session = True

        headers = {}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        url = self.url
        try:
            ws = await session.ws_connect(url, headers=headers)
        except (ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Chat connection to {url} failed: {e}")
            self._set_state(ConnectionState.CLOSED)
            await self._release()
            raise ChatConnectionError(f"Could not connect to {url}: {e}") from e

        if self.state != ConnectionState.CONNECTING:
            # close() ran while the handshake was in flight
            await ws.close()
            return

        self._ws = ws
        self._set_state(ConnectionState.OPEN)
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info(f"Connected to chat with agent {self.agent_id}")

    async def _read_loop(self, ws: ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self.receive(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"Chat transport error: {ws.exception()}")
                    break
        except (ClientError, ConnectionError) as e:
            logger.error(f"Chat transport error: {e}")
        finally:
            if self._ws is ws and self.state == ConnectionState.OPEN:
                logger.info(f"Chat with agent {self.agent_id} closed by remote (code={ws.close_code})")
                self._reader = None
                await self._release()
                self._set_state(ConnectionState.CLOSED)

    async def _release(self) -> None:
        self._cancel_typing_timer()

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

        if self._owns_http_session and self._http_session is not None:
            session, self._http_session = self._http_session, None
            self._owns_http_session = False
            await session.close()

    async def close(self) -> None:
        """Close the channel. Idempotent."""
        if self.state == ConnectionState.CLOSED:
            return

        self._set_state(ConnectionState.CLOSED)

        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

        await self._release()
        logger.info(f"Chat with agent {self.agent_id} closed")

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ===========================
    # Messaging
    # ===========================

    async def send(self, body: str) -> Optional[ChatMessage]:
        """
        Send a user message.

        Blank bodies and sends on a session that is not open are ignored
        (nothing is queued). The message is appended to the transcript
        before it is transmitted.

        Returns:
            The appended message, or None if the send was ignored
        """
        if not body or not body.strip():
            logger.debug("Ignoring blank chat message")
            return None
        if self.state != ConnectionState.OPEN or self._ws is None:
            logger.warning(f"Chat is {self.state.value}, message not sent")
            return None

        message = ChatMessage(direction=MessageDirection.USER, body=body)
        self._append(message)
        self.last_turn_failed = False

        envelope = OutboundEnvelope(
            agent_id=self.agent_id,
            user_id=self.user.id,
            message=body,
            timestamp=message.sent_at
        )

        ws = self._ws
        try:
            await ws.send_json(envelope.to_frame())
        except (ClientError, ConnectionError, RuntimeError) as e:
            logger.error(f"Failed to send chat message: {e}")
            if self._ws is ws:
                self._set_state(ConnectionState.CLOSED)
                await self._release()

        return message

    def receive(self, raw: Union[str, bytes, dict, Any]) -> Optional[ChatMessage]:
        """
        Apply one inbound frame.

        ``response`` clears typing and appends an agent message, ``typing``
        sets typing, anything else is ignored. Malformed frames are logged
        and dropped.

        Returns:
            The appended agent message, if any
        """
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
            envelope = InboundEnvelope.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Dropping malformed chat frame: {e}")
            return None

        if envelope.type == EnvelopeType.RESPONSE.value:
            self._cancel_typing_timer()
            self.agent_typing = False
            self.last_turn_failed = False
            message = ChatMessage(
                direction=MessageDirection.AGENT,
                body=envelope.message or ""
            )
            self._append(message)
            return message

        if envelope.type == EnvelopeType.TYPING.value:
            self.agent_typing = True
            self._start_typing_timer()
            return None

        logger.debug(f"Ignoring chat frame of type '{envelope.type}'")
        return None


__all__ = [
    'ChatSession',
    'ChatSessionError',
    'ChatConnectionError',
    'build_chat_url',
]
