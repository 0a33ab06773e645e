"""
User-facing notifications ("toasts").

The request pipeline and the session terminator report problems through a
NotificationCenter. Each notification is logged and handed to the registered
sinks (a GUI toast or the CLI's stderr). Identical
notifications arriving within the dedupe window are shown once, so ten
requests failing together produce one toast, not ten.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification:
    """A single message for the user."""

    def __init__(
        self,
        title: str,
        level: NotificationLevel = NotificationLevel.INFO,
        description: Optional[str] = None,
    ):
        self.title = title
        self.level = level
        self.description = description
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "level": self.level.value,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"Notification(level={self.level.value!r}, title={self.title!r})"


NotificationSink = Callable[[Notification], None]


class NotificationCenter:
    """
    Dispatches notifications to sinks with deduplication.

    Dispatch is synchronous and never raises: a failing sink is logged and
    the remaining sinks still run.
    """

    def __init__(self, dedupe_seconds: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.dedupe_seconds = dedupe_seconds
        self._clock = clock
        self._sinks: List[NotificationSink] = []
        self._last_sent: Dict[Tuple[str, str], float] = {}
        self.history: List[Notification] = []

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: NotificationSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def should_notify(self, notification: Notification) -> bool:
        """Suppress a repeat of the same (level, title) inside the dedupe window."""
        key = (notification.level.value, notification.title)
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.dedupe_seconds:
            return False
        self._last_sent[key] = now
        return True

    def notify(
        self,
        title: str,
        level: NotificationLevel = NotificationLevel.INFO,
        description: Optional[str] = None,
    ) -> Optional[Notification]:
        """
        Send a notification.

        Returns:
            The dispatched Notification, or None if it was suppressed
        """
        notification = Notification(title, level, description)

        if not self.should_notify(notification):
            logger.debug(
                "Notification suppressed as duplicate",
                title=title,
                level=level.value,
            )
            return None

        log_method = logger.warning if level == NotificationLevel.ERROR else logger.info
        log_method("Notification", title=title, level=level.value, description=description)

        self.history.append(notification)
        # Keep only the last 100 notifications
        if len(self.history) > 100:
            self.history = self.history[-100:]

        for sink in list(self._sinks):
            try:
                sink(notification)
            except Exception as e:
                logger.error(
                    "Notification sink failed",
                    sink=getattr(sink, "__name__", repr(sink)),
                    error=str(e),
                )

        return notification

    def error(self, title: str, description: Optional[str] = None) -> Optional[Notification]:
        return self.notify(title, NotificationLevel.ERROR, description)

    def success(self, title: str, description: Optional[str] = None) -> Optional[Notification]:
        return self.notify(title, NotificationLevel.SUCCESS, description)

    def info(self, title: str, description: Optional[str] = None) -> Optional[Notification]:
        return self.notify(title, NotificationLevel.INFO, description)

    def warning(self, title: str, description: Optional[str] = None) -> Optional[Notification]:
        return self.notify(title, NotificationLevel.WARNING, description)


# Global notification center instance
_notification_center: Optional[NotificationCenter] = None


def get_notification_center() -> NotificationCenter:
    """Get the global notification center instance."""
    global _notification_center
    if _notification_center is None:
        from ..config import get_settings

        _notification_center = NotificationCenter(
            dedupe_seconds=get_settings().notification_dedupe_seconds
        )
    return _notification_center


def reset_notification_center() -> None:
    """Reset notification center (useful for testing)."""
    global _notification_center
    _notification_center = None
