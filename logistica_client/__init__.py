"""Authenticated API client for the Caramello Logística freight backend."""

from .clients.api_client import AuthenticatedClient, RequestContext
from .config import Settings, get_settings
from .services.credential_store import Credentials, CredentialStore, UserProfile
from .services.refresh_coordinator import RefreshCoordinator, RefreshFailedError
from .services.session_terminator import RedirectSessionTerminator, SessionTerminator
from .utils.error_classifier import ClassifiedOutcome, OutcomeKind, classify
from .utils.signals import logout_requested

__version__ = "0.1.0"

__all__ = [
    "AuthenticatedClient",
    "RequestContext",
    "Settings",
    "get_settings",
    "Credentials",
    "CredentialStore",
    "UserProfile",
    "RefreshCoordinator",
    "RefreshFailedError",
    "RedirectSessionTerminator",
    "SessionTerminator",
    "ClassifiedOutcome",
    "OutcomeKind",
    "classify",
    "logout_requested",
]
