"""
Authenticated, self-healing HTTP client for the freight management backend.

Every call goes through one pipeline:

    SENT -> success: DONE
         -> error:   CLASSIFY -> AUTH_INVALID:   terminate session, raise
                              -> RETRYABLE_AUTH: refresh (single-flight), replay once
                              -> USER_FACING:    notify, raise
                              -> OPAQUE:         raise

The outbound stage attaches the stored access token as a bearer header. The
inbound stage classifies error responses and, for an expired access token,
asks the RefreshCoordinator for a new one and replays the original request
exactly once. The `retried` flag is the only state carried across the
refresh, which bounds every request to at most two sends.

Error responses are raised as httpx.HTTPStatusError, the same error the
caller would get from response.raise_for_status(); the pipeline re-raises
the original error after its side effects (notification, termination).
"""

import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from ..config import Settings, get_settings
from ..services.auth_service import ApiResult, AuthService, LoginResult
from ..services.credential_store import CredentialStore, create_credential_store
from ..services.refresh_coordinator import RefreshCoordinator, RefreshFailedError
from ..services.session_terminator import (
    HistoryNavigator,
    Navigator,
    RedirectSessionTerminator,
    SessionTerminator,
)
from ..utils.error_classifier import ClassifiedOutcome, OutcomeKind, classify, parse_body
from ..utils.logging import request_scope
from ..utils.notifications import NotificationCenter, NotificationLevel, get_notification_center
from ..utils.signals import LogoutSignal, logout_requested

logger = structlog.get_logger(__name__)


@dataclass
class RequestContext:
    """Per-call metadata carried through the pipeline."""

    method: str
    url: str
    retried: bool = False
    is_auth_endpoint: bool = False


class AuthenticatedClient:
    """
    httpx.AsyncClient wrapper with bearer auth, refresh-and-retry and
    session termination.

    Usage:
        async with AuthenticatedClient(settings) as api:
            await api.login("operador@caramello.com", "senha")
            response = await api.get("/fretes", params={"page": 1})
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[CredentialStore] = None,
        notifier: Optional[NotificationCenter] = None,
        terminator: Optional[SessionTerminator] = None,
        coordinator: Optional[RefreshCoordinator] = None,
        navigator: Optional[Navigator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logout_signal: Optional[LogoutSignal] = None,
    ):
        """
        Args:
            settings: client settings (global settings if omitted)
            store: credential store (built from settings if omitted)
            notifier: notification center (global one if omitted)
            terminator: session terminator (redirecting terminator if omitted)
            coordinator: refresh coordinator (one over this client's
                AuthService.refresh_token if omitted); share one between
                clients to share refreshes
            navigator: navigator for the default terminator
            transport: custom httpx transport (tests, proxies)
            logout_signal: broadcast the terminator listens on
        """
        self.settings = settings or get_settings()
        self.store = store or create_credential_store(self.settings)
        self.notifier = notifier or get_notification_center()
        self.terminator = terminator or RedirectSessionTerminator(
            self.store,
            self.notifier,
            navigator or HistoryNavigator(),
            login_path=self.settings.login_path,
            default_reason=self.settings.session_expired_message,
        )

        timeout = httpx.Timeout(
            connect=self.settings.http_connect_timeout,
            read=self.settings.http_read_timeout,
            write=self.settings.http_write_timeout,
            pool=self.settings.http_pool_timeout,
        )
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0,
        )
        self.client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

        self.auth = AuthService(self)
        self.coordinator = coordinator or RefreshCoordinator(
            self.store, self.auth.refresh_token, self.terminator, self.settings
        )

        self.logout_signal = logout_signal or logout_requested
        self.logout_signal.connect(self.terminator.terminate)

        logger.debug(
            "Authenticated client initialized",
            base_url=self.settings.api_base_url,
            timeout_config=timeout.as_dict(),
        )

    async def close(self) -> None:
        """Close the HTTP client and stop listening for logout requests."""
        self.logout_signal.disconnect(self.terminator.terminate)
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ===== Session helpers =====

    async def login(self, email: str, senha: str) -> ApiResult[LoginResult]:
        """Log in and store the token pair and user profile on success."""
        result = await self.auth.login(email, senha)
        if result.success and result.data is not None:
            self.store.set_session(result.data.credentials, result.data.user)
        return result

    def logout(self, reason: Optional[str] = None) -> None:
        """Raise the logout signal; the session terminator handles the rest."""
        self.logout_signal.send(reason or "", level=NotificationLevel.INFO)

    # ===== Pipeline stages =====

    def is_auth_endpoint(self, url: httpx.URL) -> bool:
        path = url.path.rstrip("/")
        return any(path.endswith(endpoint.rstrip("/")) for endpoint in self.settings.auth_endpoints)

    def _attach_credentials(self, request: httpx.Request) -> Optional[str]:
        """Outbound stage: set the bearer header from the store. Returns the token used."""
        token = self.store.get().access_token
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        return token

    async def _send(self, request: httpx.Request, context: RequestContext) -> httpx.Response:
        start = time.monotonic()
        response = await self.client.send(request)
        logger.debug(
            "HTTP response received",
            status_code=response.status_code,
            retried=context.retried,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return response

    def _classify(self, response: httpx.Response, context: RequestContext) -> ClassifiedOutcome:
        return classify(
            response.status_code,
            parse_body(response),
            is_auth_endpoint=context.is_auth_endpoint,
            retried=context.retried,
            phrases=self.settings.session_ended_phrases,
        )

    async def _handle_error(
        self,
        request: httpx.Request,
        response: httpx.Response,
        context: RequestContext,
        sent_token: Optional[str],
    ) -> httpx.Response:
        """Inbound stage for a non-2xx response. Returns a replayed response or raises."""
        error = httpx.HTTPStatusError(
            f"{response.status_code} error for {context.method} {context.url}",
            request=request,
            response=response,
        )
        outcome = self._classify(response, context)
        logger.info(
            "Request failed",
            status_code=response.status_code,
            outcome=outcome.kind.value,
            retried=context.retried,
        )

        if outcome.kind is OutcomeKind.RETRYABLE_AUTH:
            if not self.store.get().refresh_token:
                logger.info("Access token rejected and no refresh token stored")
                outcome = ClassifiedOutcome(OutcomeKind.AUTH_INVALID, outcome.message)
            else:
                return await self._refresh_and_replay(request, context, sent_token, error)

        if outcome.kind is OutcomeKind.AUTH_INVALID:
            self.terminator.terminate(self.settings.session_expired_message)
            raise error

        if outcome.kind is OutcomeKind.USER_FACING:
            self.notifier.error(outcome.message)

        raise error

    async def _refresh_and_replay(
        self,
        request: httpx.Request,
        context: RequestContext,
        sent_token: Optional[str],
        error: httpx.HTTPStatusError,
    ) -> httpx.Response:
        current_token = self.store.get().access_token
        if current_token and current_token != sent_token and not self.coordinator.is_refreshing:
            # A refresh finished while this request was in flight
            logger.debug("Stored token changed since send, replaying without refresh")
            new_token = current_token
        else:
            try:
                new_token = await self.coordinator.refresh()
            except RefreshFailedError as refresh_error:
                raise error from refresh_error

        try:
            replay = self._rebuild_with_token(request, new_token)
        except httpx.RequestNotRead:
            logger.warning("Streaming request body cannot be replayed")
            raise error

        context.retried = True
        logger.debug("Replaying request with refreshed token")

        response = await self._send(replay, context)
        if response.is_success:
            return response
        return await self._handle_error(replay, response, context, new_token)

    @staticmethod
    def _rebuild_with_token(request: httpx.Request, token: str) -> httpx.Request:
        """Copy of the original request carrying a new bearer token."""
        headers = request.headers.copy()
        headers["Authorization"] = f"Bearer {token}"
        return httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=request.content,
            extensions=request.extensions,
        )

    # ===== Public API, mirrors httpx.AsyncClient =====

    async def request(
        self, method: str, url: str, *, auth_flow: bool = False, **kwargs: Any
    ) -> httpx.Response:
        """
        Send an authenticated request.

        Args:
            method: HTTP method
            url: path relative to the API base URL, or an absolute URL
            auth_flow: treat the call as login/refresh even if the path differs
            **kwargs: forwarded to httpx.AsyncClient.build_request

        Returns:
            The successful httpx.Response

        Raises:
            httpx.HTTPStatusError: for any non-2xx outcome
            httpx.TransportError: network failures, untouched
        """
        request = self.client.build_request(method, url, **kwargs)
        context = RequestContext(
            method=request.method,
            url=str(request.url),
            is_auth_endpoint=auth_flow or self.is_auth_endpoint(request.url),
        )

        with request_scope(
            request_id=uuid.uuid4().hex[:12],
            method=context.method,
            path=request.url.path,
        ):
            sent_token = self._attach_credentials(request)
            try:
                response = await self._send(request, context)
            except httpx.TransportError as e:
                logger.warning("HTTP request failed", error=str(e), error_type=type(e).__name__)
                raise

            if response.is_success:
                return response
            return await self._handle_error(request, response, context, sent_token)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
