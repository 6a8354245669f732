"""
Authentication session management.

SessionManager owns the signed-in identity for one running client: it
acquires tokens, persists them through a TokenStore, refreshes them when the
API answers 401 and exposes the current user to the rest of the application.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from ..models.schemas import LoginRequest, RegisterRequest, TokenPair, User
from ..session.token_store import TokenStore, TokenStoreError
from ..session.validators import StoredSession
from .api_client import (
    ApiClient,
    ApiError,
    AuthError,
    InvalidRequestError,
    SessionExpiredError,
)

logger = logging.getLogger(__name__)

UserListener = Callable[[Optional[User]], None]


@dataclass(frozen=True)
class AuthSession:
    """Observable session: token and user are always present together."""
    access_token: str
    refresh_token: Optional[str]
    user: User
    expires_at: Optional[datetime] = None


class SessionManager:
    """
    Session Manager.

    Lifecycle:
    - initialize() once at startup restores the persisted identity
    - login() creates the session, logout() destroys it
    - refresh() (also invoked by ApiClient on 401) rotates the token pair;
      a failed refresh destroys the session

    Concurrency:
    - Refreshes are single-flight: callers that saw a 401 for a token that
      has since been replaced reuse the new token instead of refreshing again
    - Every write to the token store (tokens and user snapshot) happens
      under TokenStore.lock(); a store failure during refresh signs out
    """

    def __init__(self, api_client: ApiClient, token_store: TokenStore):
        """
        Initialize session manager and register it as the client's auth provider.

        Args:
            api_client: Marketplace API client
            token_store: Durable credential storage
        """
        self.api = api_client
        self.token_store = token_store
        self.api.auth = self

        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._user: Optional[User] = None

        self._refresh_lock = asyncio.Lock()
        self._listeners: List[UserListener] = []

        self.initialized = False
        self.refresh_count = 0

    # ===========================
    # Observable state
    # ===========================

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def access_token(self) -> Optional[str]:
        """Access token of the observable session (None until a user is adopted)."""
        return self._access_token if self._user is not None else None

    @property
    def session(self) -> Optional[AuthSession]:
        if self._user is None or self._access_token is None:
            return None
        return AuthSession(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            user=self._user,
            expires_at=self._expires_at
        )

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def loading(self) -> bool:
        return not self.initialized

    def token_expired(self, leeway: float = 0.0) -> bool:
        """
        Advisory expiry check based on ``expires_at``.

        A 401 from the API remains the authoritative expiry signal.
        """
        if self._expires_at is None:
            return False
        expires_at = self._expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
        return remaining <= leeway

    def add_listener(self, listener: UserListener) -> None:
        """Call ``listener(user)`` whenever the signed-in identity changes."""
        self._listeners.append(listener)

    def remove_listener(self, listener: UserListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._user)
            except Exception as e:
                logger.error(f"Session listener {listener!r} failed: {e}", exc_info=True)

    # ===========================
    # AuthProvider
    # ===========================

    def bearer_token(self) -> Optional[str]:
        """Token attached to outgoing requests (may precede user adoption on cold start)."""
        return self._access_token

    async def refresh_access_token(self, failed_token: Optional[str]) -> str:
        """
        Called by ApiClient after a 401.

        Raises:
            SessionExpiredError: If no refresh was possible; the session is purged
        """
        pair = await self._refresh(stale_token=failed_token)
        return pair.access_token

    # ===========================
    # State transitions
    # ===========================

    def _set_tokens(self, pair: TokenPair) -> None:
        self._access_token = pair.access_token
        self._refresh_token = pair.refresh_token
        self._expires_at = pair.expires_at

    def _adopt(self, access_token: str, refresh_token: Optional[str], user: User,
               expires_at: Optional[datetime] = None) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._expires_at = expires_at
        self._user = user
        logger.info(f"Signed in as user {user.id}")
        self._notify()

    def _forget(self) -> None:
        had_identity = self._user is not None or self._access_token is not None
        self._access_token = None
        self._refresh_token = None
        self._expires_at = None
        self._user = None

        if had_identity:
            logger.info("Session cleared")
            self._notify()

    async def _purge(self) -> None:
        """Drop in-memory identity, then every persisted value. Caller holds the store lock."""
        self._forget()
        await self.token_store.clear()

    async def _purge_locked(self) -> None:
        """Purge under the store lock; if the store is unavailable, still sign out in memory."""
        try:
            async with self.token_store.lock():
                await self._purge()
        except TokenStoreError as e:
            logger.error(f"Failed to clear persisted session: {e}")
            self._forget()

    async def _save_user(self, user: User) -> None:
        async with self.token_store.lock():
            await self.token_store.save_user(user)

    # ===========================
    # Operations
    # ===========================

    async def initialize(self) -> Optional[User]:
        """
        Restore the persisted identity. Runs once; later calls are no-ops.

        Policy:
        1. No persisted access token: signed out.
        2. Fetch the live profile with the persisted token.
           - success: adopt the fresh profile, keep the tokens
           - failure with a cached user: adopt the cached user (no refresh)
           - failure without a cached user: refresh, then fetch the profile again
           - anything else: purge and stay signed out
        """
        if self.initialized:
            return self._user

        try:
            try:
                stored = await self.token_store.load()
            except TokenStoreError as e:
                logger.error(f"Cannot read persisted session, starting signed out: {e}")
                return None

            if not stored.access_token:
                logger.info("No persisted session, starting signed out")
                return None

            self._access_token = stored.access_token
            self._refresh_token = stored.refresh_token

            try:
                user = await self.api.get_profile(auto_refresh=False)
            except ApiError as e:
                user = await self._recover_profile(stored, e)
                if user is None:
                    return None
            else:
                try:
                    await self._save_user(user)
                except TokenStoreError as e:
                    logger.error(f"Could not cache fresh profile, continuing: {e}")

            self._adopt(self._access_token, self._refresh_token, user, self._expires_at)
            return user

        finally:
            self.initialized = True

    async def _recover_profile(self, stored: StoredSession, error: ApiError) -> Optional[User]:
        if stored.user is not None:
            logger.warning(f"Profile fetch failed, using cached user data: {error}")
            return stored.user

        if not stored.refresh_token:
            logger.warning(f"Profile fetch failed and no refresh token is stored: {error}")
            await self._purge_locked()
            return None

        logger.warning(f"Profile fetch failed, attempting token refresh: {error}")
        try:
            await self.refresh()
            user = await self.api.get_profile(auto_refresh=False)
        except SessionExpiredError:
            return None
        except ApiError as e:
            logger.error(f"Profile fetch after refresh failed: {e}")
            await self._purge_locked()
            return None

        try:
            await self._save_user(user)
        except TokenStoreError as e:
            logger.error(f"Could not cache fresh profile, continuing: {e}")
        return user

    async def login(self, credentials: Union[LoginRequest, Dict[str, Any]]) -> AuthSession:
        """
        Exchange credentials for a session.

        Raises:
            AuthError: Invalid credentials; prior state is left untouched
        """
        if not isinstance(credentials, LoginRequest):
            try:
                credentials = LoginRequest.model_validate(credentials)
            except ValidationError as e:
                raise AuthError(f"Invalid credentials: {e}", payload=e.errors()) from e

        try:
            response = await self.api.login(credentials)
        except ApiError as e:
            logger.error(f"Login failed: {e}")
            raise

        async with self.token_store.lock():
            await self.token_store.save(StoredSession(
                access_token=response.access_token,
                refresh_token=response.refresh_token,
                user=response.user
            ))
            self._adopt(
                response.access_token,
                response.refresh_token,
                response.user,
                response.expires_at
            )

        return self.session

    async def register(self, user_data: Union[RegisterRequest, Dict[str, Any]]) -> Optional[User]:
        """
        Create an account.

        The session is not signed in by this call; callers that want a
        session must login() afterwards.

        Raises:
            InvalidRequestError: Backend rejected the data
        """
        if not isinstance(user_data, RegisterRequest):
            try:
                user_data = RegisterRequest.model_validate(user_data)
            except ValidationError as e:
                raise InvalidRequestError(f"Invalid registration data: {e}", payload=e.errors()) from e

        try:
            created = await self.api.register(user_data)
        except ApiError as e:
            logger.error(f"Registration failed: {e}")
            raise

        logger.info(f"Registered account {created.id if created else user_data.email}")
        return created

    async def logout(self) -> None:
        """
        Best-effort server-side logout, then unconditional local cleanup.
        Safe to call when already signed out.
        """
        try:
            if self._access_token:
                await self.api.logout()
        except ApiError as e:
            logger.error(f"Logout API call failed: {e}")
        finally:
            await self._purge_locked()

    async def refresh_user(self) -> Optional[User]:
        """
        Refetch the profile and overwrite the cached snapshot.
        Any failure signs the session out.
        """
        try:
            user = await self.api.get_profile()
            async with self.token_store.lock():
                await self.token_store.save_user(user)
                self._user = user
        except (ApiError, TokenStoreError) as e:
            logger.error(f"Failed to refresh user data: {e}")
            await self.logout()
            return None

        self._notify()
        return user

    async def update_profile(self, fields: Dict[str, Any]) -> User:
        """
        Update the profile and persist the returned snapshot.

        Raises:
            ApiError: Backend rejected the update
            TokenStoreError: Snapshot could not be persisted
        """
        user = await self.api.update_profile(fields)
        async with self.token_store.lock():
            await self.token_store.save_user(user)
            self._user = user
        self._notify()
        return user

    async def refresh(self) -> TokenPair:
        """
        Exchange the refresh token for a new token pair.

        Raises:
            SessionExpiredError: Refresh failed; the session has been purged
        """
        return await self._refresh(stale_token=None)

    async def _refresh(self, stale_token: Optional[str]) -> TokenPair:
        async with self._refresh_lock:
            if stale_token is not None and self._access_token and self._access_token != stale_token:
                logger.debug("Access token already refreshed by a concurrent request")
                return self._current_pair()

            try:
                async with self.token_store.lock():
                    return await self._rotate(stale_token)
            except TokenStoreError as e:
                # Persisted tokens are left for the next start to recover.
                logger.error(f"Token store unavailable during refresh: {e}")
                self._forget()
                raise SessionExpiredError(f"Token store unavailable: {e}") from e

    async def _rotate(self, stale_token: Optional[str]) -> TokenPair:
        stored = await self.token_store.load()

        if (
            stale_token is not None
            and stored.access_token
            and stored.access_token not in (stale_token, self._access_token)
        ):
            # Another process sharing the store refreshed first.
            logger.debug("Adopting access token refreshed by another process")
            self._access_token = stored.access_token
            self._refresh_token = stored.refresh_token
            return self._current_pair()

        refresh_token = stored.refresh_token or self._refresh_token
        if not refresh_token:
            logger.warning("Cannot refresh: no refresh token available")
            await self._purge()
            raise SessionExpiredError("No refresh token available")

        try:
            pair = await self.api.refresh_token(refresh_token)
        except ApiError as e:
            logger.error(f"Token refresh failed: {e}")
            await self._purge()
            raise SessionExpiredError(f"Token refresh failed: {e}", status=e.status) from e

        await self.token_store.save_tokens(pair.access_token, pair.refresh_token)
        self._set_tokens(pair)
        self.refresh_count += 1
        logger.info("Access token refreshed")
        return pair

    def _current_pair(self) -> TokenPair:
        # Already validated when it was minted.
        return TokenPair.model_construct(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=self._expires_at
        )


__all__ = ['SessionManager', 'AuthSession']
