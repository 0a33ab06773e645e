"""
Classification of failed backend responses.

The backend reports an ended session inconsistently: sometimes with HTTP 401,
sometimes with a free-text `message` or `error` field on any status. The
classifier turns (status, body) into one of four outcomes so the request
pipeline never has to inspect raw responses itself:

- AUTH_INVALID: the session is over, terminate it
- RETRYABLE_AUTH: the access token expired, one refresh may help
- USER_FACING: validation or server error worth showing to the user
- OPAQUE: anything else, left to the caller
"""

import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

import httpx

from ..config import DEFAULT_SESSION_ENDED_PHRASES


class OutcomeKind(str, Enum):
    AUTH_INVALID = "auth_invalid"
    RETRYABLE_AUTH = "retryable_auth"
    USER_FACING = "user_facing"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class ClassifiedOutcome:
    kind: OutcomeKind
    message: Optional[str] = None


MESSAGE_FIELDS = ("message", "error")

USER_FACING_DEFAULTS = {
    400: "Dados inválidos. Verifique as informações enviadas.",
    422: "Não foi possível processar os dados enviados.",
    500: "Erro interno do servidor. Tente novamente mais tarde.",
}


def _fold(text: str) -> str:
    """Lowercase and strip accents so 'Token Inválido' matches 'token invalido'."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def parse_body(response: httpx.Response) -> Any:
    """Decode a response body as JSON, falling back to text. Never raises."""
    try:
        return response.json()
    except ValueError:
        return response.text


def extract_message(body: Any) -> Optional[str]:
    """
    Get the backend's error text from a parsed body.

    Only the `message` and `error` fields of a JSON object count. Text bodies
    (proxy error pages, Express's bare "Unauthorized") are not messages.
    """
    if not isinstance(body, dict):
        return None
    for field in MESSAGE_FIELDS:
        value = body.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def is_session_ended_message(
    text: Optional[str], phrases: Iterable[str] = DEFAULT_SESSION_ENDED_PHRASES
) -> bool:
    """Check a backend message against the known session-ended phrases."""
    if not text:
        return False
    folded = _fold(text)
    return any(_fold(phrase) in folded for phrase in phrases)


def classify(
    status: int,
    body: Any,
    *,
    is_auth_endpoint: bool = False,
    retried: bool = False,
    phrases: Iterable[str] = DEFAULT_SESSION_ENDED_PHRASES,
) -> ClassifiedOutcome:
    """
    Classify a backend response.

    Args:
        status: HTTP status code
        body: parsed response body (dict, str or None)
        is_auth_endpoint: the request was login/refresh/register
        retried: the request is already a replay after a refresh
        phrases: session-ended phrases, matched case- and accent-insensitively

    Returns:
        ClassifiedOutcome
    """
    # Auth-flow failures mean bad credentials, never an expired session
    if is_auth_endpoint:
        return ClassifiedOutcome(OutcomeKind.OPAQUE)

    message = extract_message(body)
    # Both fields are checked; the backend sometimes sends the phrase in `error`
    texts = (
        [v for v in (body.get(f) for f in MESSAGE_FIELDS) if isinstance(v, str)]
        if isinstance(body, dict)
        else []
    )

    if any(is_session_ended_message(text, phrases) for text in texts):
        return ClassifiedOutcome(OutcomeKind.AUTH_INVALID, message)

    if status == 401:
        if retried:
            # A token fresh from a successful refresh was rejected too
            return ClassifiedOutcome(OutcomeKind.AUTH_INVALID, message)
        return ClassifiedOutcome(OutcomeKind.RETRYABLE_AUTH, message)

    if status in USER_FACING_DEFAULTS:
        return ClassifiedOutcome(
            OutcomeKind.USER_FACING, message or USER_FACING_DEFAULTS[status]
        )

    return ClassifiedOutcome(OutcomeKind.OPAQUE, message)
