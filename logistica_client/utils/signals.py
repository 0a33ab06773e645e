"""
Process-local "logout requested" broadcast.

Any part of the application can ask for the session to end by calling
`logout_requested.send(reason)`; the authenticated client connects its
session terminator as a receiver, so a user-initiated logout and a forced
expiry take the same path.
"""

from typing import Any, Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)

Receiver = Callable[..., None]


class LogoutSignal:
    """Broadcast with ordered receivers and per-receiver failure isolation."""

    def __init__(self, name: str = "logout"):
        self.name = name
        self._receivers: List[Receiver] = []

    def connect(self, receiver: Receiver) -> Receiver:
        """Register a receiver. Returns it, so this also works as a decorator."""
        if receiver not in self._receivers:
            self._receivers.append(receiver)
        return receiver

    def disconnect(self, receiver: Receiver) -> None:
        if receiver in self._receivers:
            self._receivers.remove(receiver)

    @property
    def receivers(self) -> List[Receiver]:
        return list(self._receivers)

    def send(self, reason: Optional[str] = None, **kwargs: Any) -> int:
        """
        Call every receiver with the reason and any extra keyword arguments.

        Returns:
            Number of receivers that ran without raising
        """
        logger.info("Logout requested", signal=self.name, receivers=len(self._receivers))
        delivered = 0
        for receiver in list(self._receivers):
            try:
                receiver(reason or "", **kwargs)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Logout receiver failed",
                    receiver=getattr(receiver, "__qualname__", repr(receiver)),
                    error=str(e),
                )
        return delivered


# Default application-wide signal
logout_requested = LogoutSignal()
