"""Routes sync events to the configured notification providers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from foldersync.sync.notifications import (
    ConsoleNotifier,
    NotificationProvider,
    SyncStatus,
)

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Dispatch sync events to every available notification provider.

    Always includes a ConsoleNotifier as the default provider.  A failing
    provider is logged and never interrupts the sync cycle.
    """

    def __init__(self, providers: list[NotificationProvider] | None = None) -> None:
        self._console = ConsoleNotifier()
        self._providers: list[NotificationProvider] = [self._console]
        if providers:
            self._providers.extend(providers)

    def add_provider(self, provider: NotificationProvider) -> None:
        """Register an additional notification provider."""
        self._providers.append(provider)

    @property
    def console(self) -> ConsoleNotifier:
        """Access the built-in console notifier (useful for testing)."""
        return self._console

    def on_status(self, user: str, status: SyncStatus, details: str = "") -> None:
        """Dispatch a status transition (synced / syncing / error / conflict-pending)."""
        self._dispatch(_make_event("status", user, status, details))

    def on_conflict(self, user: str, conflicts: int, details: str = "") -> None:
        event = _make_event("conflict", user, SyncStatus.CONFLICT_PENDING, details)
        event["conflicts"] = conflicts
        self._dispatch(event)

    def on_merge(self, user: str, files: list[str], details: str = "") -> None:
        event = _make_event("merge", user, SyncStatus.SYNCED, details)
        event["files"] = list(files)
        self._dispatch(event)

    def on_checkpoint(self, user: str, details: str = "") -> None:
        self._dispatch(_make_event("checkpoint", user, SyncStatus.SYNCED, details))

    def on_lock(self, user: str, details: str = "") -> None:
        self._dispatch(_make_event("lock", user, None, details))

    def on_recovery(self, user: str, details: str = "") -> None:
        """A merge lock left by a crashed session was found."""
        self._dispatch(_make_event("recovery", user, None, details))

    def _dispatch(self, event: dict[str, Any]) -> None:
        """Send event to all available providers."""
        for provider in self._providers:
            if provider.is_available():
                try:
                    provider.notify(event)
                except Exception as exc:
                    logger.warning(
                        "Notification provider %s failed: %s",
                        type(provider).__name__,
                        exc,
                    )


def _make_event(
    event_type: str,
    user: str,
    status: SyncStatus | None,
    details: str,
) -> dict[str, Any]:
    """Build a standard event dict."""
    return {
        "type": event_type,
        "user": user,
        "status": status.value if status is not None else "",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
    }
