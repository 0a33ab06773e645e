"""
Single-flight access-token refresh.

When several requests fail with an expired access token at the same time,
only one refresh-token exchange may hit the backend. The coordinator owns one
nullable pending task: the first caller creates it, every caller that arrives
while it runs awaits the same task, and the handle is dropped as soon as the
exchange settles so the next expiry starts a fresh attempt.

Everything runs on the event loop thread, so the single shared task is the
whole synchronization story; no lock is involved.
"""

import asyncio
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from .auth_service import ApiResult
from .credential_store import CredentialStore, Credentials
from .session_terminator import SessionTerminator

logger = structlog.get_logger(__name__)

RefreshExchange = Callable[[str], Awaitable[ApiResult[Credentials]]]


class RefreshError(Exception):
    """Base exception for refresh coordination."""

    pass


class RefreshFailedError(RefreshError):
    """The session could not be renewed; it has been terminated."""

    def __init__(self, reason: str, status: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status


class RefreshMetrics:
    """Counters for refresh attempts, for diagnostics."""

    def __init__(self):
        self.refresh_attempts_total = 0
        self.refresh_success_total = 0
        self.refresh_failures = defaultdict(int)  # by reason
        self.joined_in_flight_total = 0
        self.last_latency_ms: Optional[float] = None

    def record_success(self, latency_ms: float) -> None:
        self.refresh_attempts_total += 1
        self.refresh_success_total += 1
        self.last_latency_ms = latency_ms

    def record_failure(self, reason: str) -> None:
        self.refresh_attempts_total += 1
        self.refresh_failures[reason] += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "refresh_attempts_total": self.refresh_attempts_total,
            "refresh_success_total": self.refresh_success_total,
            "joined_in_flight_total": self.joined_in_flight_total,
            "failures_by_reason": dict(self.refresh_failures),
            "last_latency_ms": self.last_latency_ms,
        }


def _log_before_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Network error during token refresh, retrying",
        attempt=retry_state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__,
    )


class RefreshCoordinator:
    """Owns the single in-flight refresh exchange."""

    def __init__(
        self,
        store: CredentialStore,
        exchange: RefreshExchange,
        terminator: SessionTerminator,
        settings: Settings,
    ):
        self.store = store
        self.exchange = exchange
        self.terminator = terminator
        self.settings = settings
        self._pending: Optional[asyncio.Task] = None
        self.metrics = RefreshMetrics()

    @property
    def is_refreshing(self) -> bool:
        return self._pending is not None

    async def refresh(self) -> str:
        """
        Get a new access token, sharing any exchange already in flight.

        Returns:
            The new access token

        Raises:
            RefreshFailedError: the exchange failed; the session is terminated
        """
        if self._pending is None:
            self._pending = asyncio.create_task(self._run())
        else:
            self.metrics.joined_in_flight_total += 1
            logger.debug("Joining in-flight token refresh")

        # Shielded: a cancelled caller must not cancel the exchange others await
        return await asyncio.shield(self._pending)

    async def _run(self) -> str:
        start_time = time.monotonic()
        try:
            refresh_token = self.store.get().refresh_token
            if not refresh_token:
                logger.info("No refresh token stored, terminating session")
                self._fail("missing_refresh_token")
                raise RefreshFailedError("Nenhum refresh token disponível")

            try:
                result = await asyncio.wait_for(
                    self._exchange_with_retries(refresh_token),
                    timeout=self.settings.refresh_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Token refresh timed out",
                    timeout_seconds=self.settings.refresh_timeout_seconds,
                )
                self._fail("timeout")
                raise RefreshFailedError("Tempo esgotado ao renovar sessão")
            except httpx.TransportError as e:
                logger.warning("Token refresh network failure", error=str(e))
                self._fail("network")
                raise RefreshFailedError(f"Falha de rede ao renovar sessão: {e}") from e
            except Exception as e:
                logger.error(
                    "Unexpected error during token refresh",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._fail("unexpected")
                raise RefreshFailedError(f"Erro inesperado ao renovar sessão: {e}") from e

            if not result.success or result.data is None or not result.data.access_token:
                logger.warning(
                    "Token refresh rejected",
                    status_code=result.status,
                    backend_message=result.message,
                )
                self._fail("rejected")
                raise RefreshFailedError(
                    result.message or "Não foi possível renovar a sessão", result.status
                )

            # Rotation is optional: keep the current refresh token if none came back
            new_credentials = Credentials(
                access_token=result.data.access_token,
                refresh_token=result.data.refresh_token or refresh_token,
            )
            self.store.set(new_credentials)

            latency_ms = (time.monotonic() - start_time) * 1000
            self.metrics.record_success(latency_ms)
            logger.info(
                "Token refresh successful",
                latency_ms=round(latency_ms, 2),
                rotated_refresh_token=bool(result.data.refresh_token),
            )
            return new_credentials.access_token
        finally:
            self._pending = None

    async def _exchange_with_retries(self, refresh_token: str) -> ApiResult[Credentials]:
        """Run the exchange, retrying transport errors with exponential backoff."""
        base_delay = self.settings.refresh_base_delay_ms / 1000.0
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.refresh_max_network_retries + 1),
            wait=wait_exponential(multiplier=base_delay, min=base_delay, max=base_delay * 8),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_before_retry,
            reraise=True,
        ):
            with attempt:
                return await self.exchange(refresh_token)

    def _fail(self, reason: str) -> None:
        self.metrics.record_failure(reason)
        self.terminator.terminate(self.settings.session_expired_message)
