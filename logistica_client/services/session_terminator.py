"""
Session termination.

Ending a session clears the stored credentials and sends the user back to
the login entry point with the reason. Where "back" is depends on the host,
so the redirect goes through a Navigator (an in-memory history here, a
console prompt in the CLI).
"""

from typing import List, Optional, Protocol, Tuple
from urllib.parse import urlencode, urlsplit

import structlog

from ..config import SESSION_EXPIRED_MESSAGE
from ..utils.notifications import NotificationCenter, NotificationLevel
from .credential_store import CredentialStore

logger = structlog.get_logger(__name__)


class SessionTerminator(Protocol):
    """Capability used by the pipeline to end the current session."""

    def terminate(self, reason: str, level: NotificationLevel = NotificationLevel.ERROR) -> None: ...


class Navigator(Protocol):
    """Where the user currently is, and how to send them elsewhere."""

    @property
    def current_path(self) -> str: ...

    def navigate(self, url: str, replace: bool = False) -> None: ...


class HistoryNavigator:
    """In-memory location history (headless sessions, tests)."""

    def __init__(self, start: str = "/"):
        self.history: List[Tuple[str, bool]] = []
        self._location = start

    @property
    def location(self) -> str:
        return self._location

    @property
    def current_path(self) -> str:
        return urlsplit(self._location).path

    def navigate(self, url: str, replace: bool = False) -> None:
        self.history.append((url, replace))
        self._location = url


class RedirectSessionTerminator:
    """
    Clears credentials, notifies, and redirects to the login entry point.

    The reason travels as a `reason` query parameter so the login screen can
    show it after a reload, without relying on in-memory state. When the user
    is already on the login screen only the credentials are cleared.
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: NotificationCenter,
        navigator: Navigator,
        login_path: str = "/login",
        default_reason: str = SESSION_EXPIRED_MESSAGE,
    ):
        self.store = store
        self.notifier = notifier
        self.navigator = navigator
        self.login_path = login_path
        self.default_reason = default_reason
        self.terminations = 0

    def login_url(self, reason: Optional[str]) -> str:
        if not reason:
            return self.login_path
        return f"{self.login_path}?{urlencode({'reason': reason})}"

    def terminate(self, reason: str, level: NotificationLevel = NotificationLevel.ERROR) -> None:
        """
        End the session with `reason`.

        Expiry and rejected credentials notify as errors; a logout the user
        asked for passes `level=NotificationLevel.INFO`.
        """
        reason = reason or self.default_reason
        self.terminations += 1

        self.store.clear()
        self.notifier.notify(reason, level)

        if self.navigator.current_path == self.login_path:
            logger.debug("Already on login entry point, not navigating")
            return

        target = self.login_url(reason)
        logger.info("Session terminated, redirecting to login", target=target)
        self.navigator.navigate(target, replace=True)
