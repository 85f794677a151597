"""In-memory buffer of a user's edits between saves."""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from foldersync.config import BOOKKEEPING_FIELDS
from foldersync.models.change import Change, Operation

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeTracker:
    """Record every mutation an author makes to tracked tables.

    Changes are buffered in memory until :meth:`drain` hands them to the
    change file writer.  Tracking never touches storage.

    Parameters
    ----------
    author:
        Identity stamped on every recorded change.
    clock:
        Returns the current time; defaults to UTC now.
    """

    def __init__(
        self,
        author: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.author = author
        self._clock = clock or _utc_now
        self._buffer: list[Change] = []
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)

    def track_operation(
        self,
        table: str,
        sync_id: int | str,
        operation: Operation | str,
        field: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
    ) -> Change:
        """Append one change to the buffer and return it."""
        with self._lock:
            change = Change(
                table=table,
                sync_id=sync_id,
                operation=Operation(operation),
                field=field,
                old_value=old_value,
                new_value=new_value,
                author=self.author,
                timestamp=self._clock(),
                sequence=next(self._sequence),
            )
            self._buffer.append(change)
        return change

    def track_insert(
        self,
        table: str,
        sync_id: int | str,
        values: dict[str, Any] | None = None,
    ) -> None:
        """Record a new row: one insert plus one update per non-null field."""
        self.track_operation(table, sync_id, Operation.INSERT)
        for name, value in (values or {}).items():
            if name in BOOKKEEPING_FIELDS or value is None:
                continue
            self.track_operation(
                table, sync_id, Operation.UPDATE,
                field=name, new_value=value,
            )

    def track_update(
        self,
        table: str,
        sync_id: int | str,
        field: str,
        old_value: Any,
        new_value: Any,
    ) -> None:
        self.track_operation(
            table, sync_id, Operation.UPDATE,
            field=field, old_value=old_value, new_value=new_value,
        )

    def track_delete(self, table: str, sync_id: int | str) -> None:
        self.track_operation(table, sync_id, Operation.DELETE)

    def drain(self) -> list[Change]:
        """Return every buffered change and empty the buffer atomically.

        If the caller fails to persist the result it must hand the changes
        back with :meth:`requeue`.
        """
        with self._lock:
            drained, self._buffer = self._buffer, []
        return drained

    def requeue(self, changes: list[Change]) -> None:
        """Put drained changes back ahead of anything tracked since."""
        if not changes:
            return
        with self._lock:
            self._buffer[:0] = changes
        logger.debug("Re-buffered %d change(s) for %s", len(changes), self.author)

    @property
    def pending(self) -> int:
        """Number of buffered changes."""
        with self._lock:
            return len(self._buffer)

    def __len__(self) -> int:
        return self.pending
