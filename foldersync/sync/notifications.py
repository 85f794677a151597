"""Console and caller-callback notification providers."""

from __future__ import annotations

import abc
import logging
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Status reported to the presentation layer."""

    SYNCED = "synced"
    SYNCING = "syncing"
    ERROR = "error"
    CONFLICT_PENDING = "conflict-pending"


class NotificationProvider(abc.ABC):
    """Abstract notification provider."""

    @abc.abstractmethod
    def notify(self, event: dict[str, Any]) -> bool:
        """Deliver an event.

        Parameters
        ----------
        event:
            Event dict with keys: type, user, status, timestamp, details,
            plus type-specific extras (``conflicts``, ``files``, ...).

        Returns True if the event was delivered.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Return True if provider is ready to deliver."""


class ConsoleNotifier(NotificationProvider):
    """Always-available log-backed provider that also keeps an in-memory log."""

    def __init__(self) -> None:
        self._log: list[dict[str, Any]] = []

    def notify(self, event: dict[str, Any]) -> bool:
        self._log.append(event)
        logger.info("[foldersync] %s", format_event(event))
        return True

    def is_available(self) -> bool:
        return True

    @property
    def log(self) -> list[dict[str, Any]]:
        """Access the in-memory log for testing."""
        return list(self._log)


class CallbackNotifier(NotificationProvider):
    """Forward events to a caller-supplied function (e.g. a UI status bar)."""

    def __init__(self, callback: Callable[[dict[str, Any]], Any]) -> None:
        self._callback = callback

    def notify(self, event: dict[str, Any]) -> bool:
        self._callback(event)
        return True

    def is_available(self) -> bool:
        return self._callback is not None


def format_event(event: dict[str, Any]) -> str:
    """Format an event dict into a readable one-line message."""
    parts = [str(event.get("type", "unknown"))]
    status = event.get("status")
    if status:
        parts.append(f"[{status}]")
    user = event.get("user")
    if user:
        parts.append(f"by {user}")
    details = event.get("details")
    if details:
        parts.append(f"- {details}")
    return " ".join(parts)
