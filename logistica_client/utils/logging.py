"""
Logging setup for the client.

structlog renders every entry and stdlib logging is the sink. Entries logged
inside request_scope() carry that request's fields, and credential values are
masked before rendering so no token or password reaches a log file.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Mapping, Optional

import structlog
from structlog.types import EventDict, Processor

_scope: ContextVar[Mapping[str, Any]] = ContextVar("logistica_request_scope", default={})

# Substrings of field names whose string values are credentials
CREDENTIAL_MARKERS = ("authorization", "token", "senha", "password", "secret", "fernet")


def current_scope() -> Dict[str, Any]:
    """Fields bound by the innermost active request_scope()."""
    return dict(_scope.get())


@contextmanager
def request_scope(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every entry logged inside the block.

    Scopes nest; the outer fields are restored on exit. Each asyncio task
    works on its own copy of the context, so concurrent requests never see
    each other's fields.

    Example:
        with request_scope(request_id="a1b2", method="GET", path="/api/fretes"):
            ...
    """
    token = _scope.set({**_scope.get(), **fields})
    try:
        yield
    finally:
        _scope.reset(token)


def merge_request_scope(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in _scope.get().items():
        event_dict.setdefault(key, value)
    return event_dict


def mask_value(value: str) -> str:
    """'Bearer eyJhbGciOi...payload' -> 'Bearer eyJh...load'; short values fully."""
    scheme, _, credential = value.partition(" ")
    if credential and scheme.lower() == "bearer":
        return f"{scheme} {mask_value(credential)}"
    if len(value) <= 12:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


def mask_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Mask string values of credential fields.

    Only strings are touched: flags such as has_refresh_token=True carry no
    secret and stay readable.
    """
    for key, value in event_dict.items():
        if isinstance(value, str) and any(m in key.lower() for m in CREDENTIAL_MARKERS):
            event_dict[key] = mask_value(value)
    return event_dict


class RuntimeFields:
    """Stamp each entry with the app environment and version."""

    def __init__(self, app_env: str, app_version: str):
        self.fields = {"env": app_env, "version": app_version}

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.update(self.fields)
        return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        app_env: development, staging, production or test
        app_version: stamped on every entry
        json_format: JSON lines instead of console output (default: JSON for
            staging and production)
    """
    if json_format is None:
        json_format = app_env in ("staging", "production")

    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(stream=sys.stderr, format="%(message)s", level=level)

    renderer: Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            merge_request_scope,
            RuntimeFields(app_env, app_version),
            mask_credentials,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
