"""Notification sinks for user-facing messages (toasts)."""

import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

SUCCESS = "success"
INFO = "info"
WARNING = "warning"
ERROR = "error"

DEFAULT_DURATION_MS = 3000


class Notifier(Protocol):
    def notify(self, message: str, level: str = INFO, duration_ms: int = DEFAULT_DURATION_MS) -> None:
        ...


@dataclass(frozen=True)
class Notification:
    message: str
    level: str
    duration_ms: int


class LogNotifier:
    """Writes notifications to the log. Used when no UI is attached."""

    _levels = {
        SUCCESS: logging.INFO,
        INFO: logging.INFO,
        WARNING: logging.WARNING,
        ERROR: logging.ERROR,
    }

    def notify(self, message: str, level: str = INFO, duration_ms: int = DEFAULT_DURATION_MS) -> None:
        logger.log(self._levels.get(level, logging.INFO), "[%s] %s", level, message)


class CollectingNotifier:
    """Keeps every notification in order so a shell can render them later."""

    def __init__(self):
        self.notifications: list[Notification] = []

    def notify(self, message: str, level: str = INFO, duration_ms: int = DEFAULT_DURATION_MS) -> None:
        self.notifications.append(Notification(message, level, duration_ms))

    def of_level(self, level: str) -> list[Notification]:
        return [n for n in self.notifications if n.level == level]

    @property
    def has_errors(self) -> bool:
        return any(n.level == ERROR for n in self.notifications)

    def clear(self):
        self.notifications.clear()
