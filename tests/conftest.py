"""
Shared test fixtures for the authenticated client tests.

Provides an isolated settings object, an in-memory credential store, a
notification recorder and a scripted fake backend served through
httpx.MockTransport, so no test touches the network or the user's real
session file.
"""

import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "DEBUG",
        "CREDENTIAL_STORE_BACKEND": "memory",
    }
)

from logistica_client.clients.api_client import AuthenticatedClient
from logistica_client.config import Settings, reset_settings
from logistica_client.services.credential_store import (
    CredentialStore,
    Credentials,
    MemoryStorage,
)
from logistica_client.services.session_terminator import HistoryNavigator
from logistica_client.utils.notifications import NotificationCenter, reset_notification_center
from logistica_client.utils.signals import LogoutSignal

BASE_URL = "http://backend.test/api"

Handler = Callable[[httpx.Request], Any]


class FakeBackend:
    """
    Scripted stand-in for the freight REST backend.

    - protected routes answer 200 for a known access token, 401 otherwise
    - /auth/refresh exchanges known refresh tokens for new access tokens
    - /auth/login accepts the accounts in `users`
    Every request is recorded in `calls`.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.valid_access_tokens = {"access-new"}
        # refresh token -> (new access token, rotated refresh token or None)
        self.refresh_grants: Dict[str, Tuple[str, Optional[str]]] = {
            "refresh-1": ("access-new", None)
        }
        self.users = {
            "operador@caramello.com": {
                "senha": "segredo123",
                "usuario": {
                    "id": "u-1",
                    "nome": "Operador",
                    "email": "operador@caramello.com",
                    "role": "operador",
                },
            }
        }
        self.refresh_delay = 0.01
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self._gate_size = 0
        self._gate_waiting = 0
        self._gate_open: Optional[asyncio.Event] = None

    # ===== Scripting helpers =====

    def route(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method.upper(), path)] = handler

    def hold_unauthorized(self, count: int) -> None:
        """Delay 401 answers until `count` requests have been rejected together."""
        self._gate_size = count
        self._gate_waiting = 0
        self._gate_open = asyncio.Event()

    def calls_to(self, path: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            c
            for c in self.calls
            if c.url.path == path and (method is None or c.method == method.upper())
        ]

    # ===== Transport =====

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, request.url.path)

        if key in self.routes:
            result = self.routes[key](request)
            if asyncio.iscoroutine(result):
                result = await result
            return result

        if request.url.path == "/api/auth/refresh":
            return await self._refresh(request)
        if request.url.path == "/api/auth/login":
            return self._login(request)
        return await self._protected(request)

    async def _protected(self, request: httpx.Request) -> httpx.Response:
        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else None
        if token in self.valid_access_tokens:
            return httpx.Response(
                200, json={"success": True, "data": [], "path": request.url.path}
            )

        if self._gate_open is not None:
            self._gate_waiting += 1
            if self._gate_waiting >= self._gate_size:
                self._gate_open.set()
            await self._gate_open.wait()

        return httpx.Response(401, json={"success": False})

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(self.refresh_delay)
        payload = json.loads(request.content or b"{}")
        grant = self.refresh_grants.get(payload.get("refreshToken"))
        if grant is None:
            return httpx.Response(
                401, json={"success": False, "message": "Refresh token inválido"}
            )
        access, rotated = grant
        body = {"success": True, "token": access}
        if rotated:
            body["refreshToken"] = rotated
        return httpx.Response(200, json=body)

    def _login(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content or b"{}")
        account = self.users.get(payload.get("email"))
        if account is None or account["senha"] != payload.get("senha"):
            return httpx.Response(
                401, json={"success": False, "message": "Email ou senha incorretos"}
            )
        return httpx.Response(
            200,
            json={
                "success": True,
                "message": "Login realizado",
                "token": "access-new",
                "refresh_token": "refresh-1",
                "usuario": account["usuario"],
            },
        )


@pytest.fixture(autouse=True)
def reset_globals():
    """Keep global singletons from leaking between tests."""
    reset_settings()
    reset_notification_center()
    yield
    reset_settings()
    reset_notification_center()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        api_base_url=BASE_URL,
        credential_store_backend="memory",
        refresh_timeout_seconds=1.0,
        refresh_max_network_retries=2,
        refresh_base_delay_ms=10,
    )


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(MemoryStorage())


@pytest.fixture
def expired_session(store: CredentialStore) -> CredentialStore:
    """A store holding an expired access token and a valid refresh token."""
    store.set(Credentials(access_token="access-old", refresh_token="refresh-1"))
    return store


@pytest.fixture
def notifier() -> NotificationCenter:
    return NotificationCenter(dedupe_seconds=3.0)


@pytest.fixture
def navigator() -> HistoryNavigator:
    return HistoryNavigator(start="/fretes")


@pytest.fixture
def logout_signal() -> LogoutSignal:
    return LogoutSignal("test-logout")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def api(settings, store, notifier, navigator, backend, logout_signal) -> AuthenticatedClient:
    return AuthenticatedClient(
        settings,
        store=store,
        notifier=notifier,
        navigator=navigator,
        transport=httpx.MockTransport(backend.handler),
        logout_signal=logout_signal,
    )
