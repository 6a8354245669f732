"""
HTTP client for the marketplace REST API.

Every authenticated request carries ``Authorization: Bearer <token>``. A 401
triggers exactly one token refresh through the configured auth provider and
exactly one retry of the original request before any error reaches the caller.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol, Tuple

from aiohttp import ClientSession, ClientTimeout, ClientError
from pydantic import ValidationError

from ..models.schemas import (
    AuthResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    User,
)

logger = logging.getLogger(__name__)


# ===========================
# Custom Exceptions
# ===========================

class ApiError(Exception):
    """Base exception for marketplace API errors."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status = status
        self.payload = payload


class AuthError(ApiError):
    """Credentials rejected or authorization missing (401/403)."""
    pass


class SessionExpiredError(AuthError):
    """Token refresh failed; the local session has been purged."""
    pass


class NotAuthenticatedError(AuthError):
    """The operation needs a signed-in identity and there is none."""
    pass


class InvalidRequestError(ApiError):
    """Request rejected by backend validation (4xx)."""
    pass


class ServerError(ApiError):
    """Backend error (5xx)."""
    pass


class NetworkError(ApiError):
    """Transport failure or timeout; no HTTP status available."""
    pass


class AuthProvider(Protocol):
    """Source of bearer tokens for authenticated requests."""

    def bearer_token(self) -> Optional[str]:
        ...

    async def refresh_access_token(self, failed_token: Optional[str]) -> str:
        ...


def error_message(payload: Any, default: str) -> str:
    """Extract the backend's error text from ``{"success": false, "error": ...}``."""
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def unwrap(payload: Any) -> Any:
    """Return ``data`` from a ``{"success": true, "data": ...}`` envelope."""
    if isinstance(payload, dict) and "success" in payload and "data" in payload:
        return payload["data"]
    return payload


class ApiClient:
    """
    Async marketplace API client.

    Features:
    - Single pooled aiohttp session, created lazily inside the running loop
    - Bearer token injection from an AuthProvider
    - 401 -> refresh -> retry exactly once
    - Envelope unwrapping and status -> exception mapping
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        auth: Optional[AuthProvider] = None,
        session: Optional[ClientSession] = None
    ):
        """
        Initialize API client.

        Args:
            base_url: API base URL, e.g. ``http://localhost:8080/api/v1``
            timeout: Total request timeout in seconds
            auth: Token provider used for authenticated requests
            session: Externally owned aiohttp session (not closed by close())
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.auth = auth
        self._session = session
        self._owns_session = session is None

        logger.info(f"ApiClient initialized (base_url={self.base_url}, timeout={timeout}s)")

    async def get_http_session(self) -> ClientSession:
        """Shared aiohttp session (also used for WebSocket connections)."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                headers={
                    "Accept": "application/json",
                    "User-Agent": "AgentMarketplaceClient/1.0"
                }
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ===========================
    # Request pipeline
    # ===========================

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _send(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]],
        token: Optional[str]
    ) -> Tuple[int, Any]:
        session = await self.get_http_session()
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        try:
            async with session.request(
                method, self._url(path), json=json_body, headers=headers
            ) as response:
                raw = await response.text()
                try:
                    payload = json.loads(raw) if raw else None
                except ValueError:
                    payload = raw
                logger.debug(f"{method} {path} -> {response.status}")
                return response.status, payload
        except asyncio.TimeoutError as e:
            logger.error(f"{method} {path} timed out after {self.timeout}s")
            raise NetworkError(f"Request timed out: {method} {path}") from e
        except ClientError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise NetworkError(f"Request failed: {method} {path}: {e}") from e

    @staticmethod
    def _raise_for_status(status: int, payload: Any, method: str, path: str) -> None:
        if 200 <= status < 300:
            return

        message = error_message(payload, f"{method} {path} failed with status {status}")

        if status in (401, 403):
            raise AuthError(message, status=status, payload=payload)
        if 400 <= status < 500:
            raise InvalidRequestError(message, status=status, payload=payload)
        raise ServerError(message, status=status, payload=payload)

    async def request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        auto_refresh: bool = True
    ) -> Any:
        """
        Perform a request and return the unwrapped ``data`` payload.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            json_body: JSON request body
            authenticated: Attach the bearer token
            auto_refresh: On 401, refresh once and retry once

        Raises:
            ApiError subclasses; SessionExpiredError when the refresh failed
        """
        token = self.auth.bearer_token() if (authenticated and self.auth) else None
        status, payload = await self._send(method, path, json_body, token)

        if status == 401 and authenticated and auto_refresh and self.auth:
            if token is None:
                raise NotAuthenticatedError(
                    error_message(payload, "Authentication required"),
                    status=status,
                    payload=payload
                )

            logger.info(f"{method} {path} returned 401, refreshing access token")
            new_token = await self.auth.refresh_access_token(token)
            status, payload = await self._send(method, path, json_body, new_token)

        self._raise_for_status(status, payload, method, path)
        return unwrap(payload)

    # ===========================
    # Auth endpoints
    # ===========================

    async def login(self, credentials: LoginRequest) -> AuthResponse:
        """
        POST /auth/login.

        Raises:
            AuthError: Any 4xx (invalid credentials)
        """
        try:
            data = await self.request(
                "POST", "/auth/login",
                json_body=credentials.model_dump(),
                authenticated=False
            )
        except InvalidRequestError as e:
            raise AuthError(str(e), status=e.status, payload=e.payload) from e

        return self._parse(AuthResponse, data, "login")

    async def register(self, data: RegisterRequest) -> Optional[User]:
        """POST /auth/register; returns the created user when the backend sends one."""
        payload = await self.request(
            "POST", "/auth/register",
            json_body=data.to_payload(),
            authenticated=False
        )
        if isinstance(payload, dict) and isinstance(payload.get("user"), dict):
            payload = payload["user"]
        if not isinstance(payload, dict) or "id" not in payload:
            return None
        return self._parse(User, payload, "register")

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        """POST /auth/refresh; never intercepted."""
        data = await self.request(
            "POST", "/auth/refresh",
            json_body=RefreshRequest(refresh_token=refresh_token).model_dump(),
            authenticated=False
        )
        return self._parse(TokenPair, data, "refresh")

    async def logout(self) -> None:
        """POST /auth/logout; the body is ignored."""
        await self.request("POST", "/auth/logout", auto_refresh=False)

    async def validate_token(self) -> Any:
        return await self.request("POST", "/auth/validate")

    async def forgot_password(self, email: str) -> Any:
        return await self.request(
            "POST", "/auth/forgot-password",
            json_body={"email": email},
            authenticated=False
        )

    async def reset_password(self, token: str, password: str) -> Any:
        return await self.request(
            "POST", "/auth/reset-password",
            json_body={"token": token, "password": password},
            authenticated=False
        )

    # ===========================
    # User endpoints
    # ===========================

    async def get_profile(self, auto_refresh: bool = True) -> User:
        """GET /users/profile."""
        data = await self.request("GET", "/users/profile", auto_refresh=auto_refresh)
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            data = data["user"]
        return self._parse(User, data, "profile")

    async def update_profile(self, fields: Dict[str, Any]) -> User:
        """PUT /users/profile."""
        data = await self.request("PUT", "/users/profile", json_body=fields)
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            data = data["user"]
        return self._parse(User, data, "update profile")

    async def health_check(self) -> Any:
        """GET /health (unauthenticated)."""
        return await self.request("GET", "/health", authenticated=False)

    @staticmethod
    def _parse(model, data: Any, operation: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error(f"Unexpected {operation} response shape: {e}")
            raise ApiError(f"Unexpected {operation} response: {e}", payload=data) from e


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
]
