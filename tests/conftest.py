"""
Pytest configuration and shared fixtures for testing.
Provides a fake marketplace backend, token stores and client wiring.
"""
import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

# Keep developer .env / environment out of the settings under test
for _name in list(os.environ):
    if _name.startswith("MARKETPLACE_"):
        del os.environ[_name]

from marketplace_client.config import Settings
from marketplace_client.models.schemas import User
from marketplace_client.services.api_client import ApiClient
from marketplace_client.services.auth_service import SessionManager
from marketplace_client.session import InMemoryTokenStore


TEST_EMAIL = "a@b.com"
TEST_PASSWORD = "x"
TEST_USER = {"id": "u1", "email": TEST_EMAIL, "first_name": "Ada", "last_name": "Byron"}


# ===========================
# Fake Backend
# ===========================

class FakeBackend:
    """
    In-process stand-in for the marketplace API.

    Mints sequential token pairs (t1/r1, t2/r2, ...), wraps every body in the
    ``{"success": ..., "data"|"error": ...}`` envelope and counts calls so
    tests can assert on refresh/retry behavior.
    """

    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {
            TEST_EMAIL: {"password": TEST_PASSWORD, "user": dict(TEST_USER)}
        }
        self.access_tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self._counter = 0

        # Failure injection
        self.refresh_fail = False
        self.refresh_delay = 0.0
        self.profile_status: Optional[int] = None
        self.logout_status: Optional[int] = None
        self.chat_available = True
        self.chat_reply = "Hi there"

        # Call accounting
        self.calls: Dict[str, int] = {
            "login": 0, "register": 0, "refresh": 0,
            "profile": 0, "logout": 0, "chat_connect": 0
        }
        self.profile_tokens: List[Optional[str]] = []
        self.chat_headers: List[Optional[str]] = []
        self.chat_agents: List[str] = []
        self.chat_frames: List[Dict[str, Any]] = []

        self.base_url: Optional[str] = None
        self.ws_base_url: Optional[str] = None

    # ---- helpers used by tests ----

    def user_for(self, email: str = TEST_EMAIL) -> Dict[str, Any]:
        return self.accounts[email]["user"]

    def mint(self, user_id: str) -> Dict[str, str]:
        self._counter += 1
        access, refresh = f"t{self._counter}", f"r{self._counter}"
        self.access_tokens[access] = user_id
        self.refresh_tokens[refresh] = user_id
        return {"access_token": access, "refresh_token": refresh}

    def seed_refresh_token(self, token: str, user_id: str = "u1") -> None:
        self.refresh_tokens[token] = user_id

    def expire_access_tokens(self) -> None:
        self.access_tokens.clear()

    # ---- request plumbing ----

    @staticmethod
    def ok(data: Any, status: int = 200) -> web.Response:
        return web.json_response({"success": True, "data": data}, status=status)

    @staticmethod
    def fail(error: str, status: int) -> web.Response:
        return web.json_response({"success": False, "error": error}, status=status)

    def _bearer(self, request: web.Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            return header[len("Bearer "):]
        return None

    def _current_user(self, request: web.Request) -> Optional[Dict[str, Any]]:
        user_id = self.access_tokens.get(self._bearer(request) or "")
        if user_id is None:
            return None
        for account in self.accounts.values():
            if account["user"]["id"] == user_id:
                return account["user"]
        return None

    # ---- handlers ----

    async def login(self, request: web.Request) -> web.Response:
        self.calls["login"] += 1
        body = await request.json()
        account = self.accounts.get(body.get("email"))
        if account is None or account["password"] != body.get("password"):
            return self.fail("Invalid credentials", 401)

        pair = self.mint(account["user"]["id"])
        return self.ok({**pair, "user": account["user"], "expires_at": "2030-01-01T00:00:00Z"})

    async def register(self, request: web.Request) -> web.Response:
        self.calls["register"] += 1
        body = await request.json()
        if body["email"] in self.accounts:
            return self.fail("Email already registered", 409)

        user = {
            "id": f"u{len(self.accounts) + 1}",
            "email": body["email"],
            "username": body.get("username"),
            "first_name": body["first_name"],
            "last_name": body["last_name"],
        }
        self.accounts[body["email"]] = {"password": body["password"], "user": user}
        return self.ok({"user": user}, status=201)

    async def refresh(self, request: web.Request) -> web.Response:
        self.calls["refresh"] += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)

        body = await request.json()
        user_id = self.refresh_tokens.pop(body.get("refresh_token"), None)
        if self.refresh_fail or user_id is None:
            return self.fail("Invalid refresh token", 401)

        return self.ok(self.mint(user_id))

    async def get_profile(self, request: web.Request) -> web.Response:
        self.calls["profile"] += 1
        self.profile_tokens.append(self._bearer(request))
        if self.profile_status is not None:
            return self.fail("Injected failure", self.profile_status)

        user = self._current_user(request)
        if user is None:
            return self.fail("Invalid or expired token", 401)
        return self.ok({"user": user})

    async def update_profile(self, request: web.Request) -> web.Response:
        user = self._current_user(request)
        if user is None:
            return self.fail("Invalid or expired token", 401)
        user.update(await request.json())
        return self.ok(user)

    async def logout(self, request: web.Request) -> web.Response:
        self.calls["logout"] += 1
        if self.logout_status is not None:
            return self.fail("Injected failure", self.logout_status)
        self.access_tokens.pop(self._bearer(request) or "", None)
        return self.ok({"message": "Logged out"})

    async def health(self, request: web.Request) -> web.Response:
        return self.ok({"status": "healthy"})

    async def chat_socket(self, request: web.Request) -> web.StreamResponse:
        self.calls["chat_connect"] += 1
        if not self.chat_available:
            return self.fail("Chat unavailable", 503)

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.chat_headers.append(request.headers.get("Authorization"))
        self.chat_agents.append(request.match_info["agent_id"])

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.chat_frames.append(frame)

            if frame.get("message") == "bye":
                await ws.close()
                break
            if frame.get("message") == "garbage":
                await ws.send_str("{not json")

            await ws.send_json({"type": "typing"})
            await ws.send_json({"type": "response", "message": self.chat_reply})

        return ws

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/v1/auth/login", self.login)
        app.router.add_post("/api/v1/auth/register", self.register)
        app.router.add_post("/api/v1/auth/refresh", self.refresh)
        app.router.add_post("/api/v1/auth/logout", self.logout)
        app.router.add_get("/api/v1/users/profile", self.get_profile)
        app.router.add_put("/api/v1/users/profile", self.update_profile)
        app.router.add_get("/api/v1/health", self.health)
        app.router.add_get("/api/v1/ws/chat/{agent_id}", self.chat_socket)
        return app


# ===========================
# Fixtures
# ===========================

@pytest.fixture
async def backend():
    """Running fake backend."""
    fake = FakeBackend()
    server = TestServer(fake.build_app())
    await server.start_server()

    fake.base_url = str(server.make_url("/api/v1"))
    fake.ws_base_url = "ws" + fake.base_url[len("http"):]

    yield fake

    await server.close()


@pytest.fixture
def test_settings(backend) -> Settings:
    """Settings pointing at the fake backend with in-memory persistence."""
    return Settings(
        _env_file=None,
        api_base_url=backend.base_url,
        token_store_type="in_memory",
        request_timeout=5.0,
        reconnect_max_attempts=2,
        reconnect_initial_delay=0.01,
        debug=True
    )


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
async def api_client(backend):
    client = ApiClient(backend.base_url, timeout=5.0)
    yield client
    await client.close()


@pytest.fixture
def session_manager(api_client, token_store) -> SessionManager:
    return SessionManager(api_client, token_store)


@pytest.fixture
def test_user() -> User:
    return User.model_validate(TEST_USER)


@pytest.fixture
def wait_for() -> Callable:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    return _wait_for


# ===========================
# Markers
# ===========================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests exercising the fake backend over HTTP/WebSocket"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "requires_redis: marks tests requiring Redis connection"
    )
