"""Advisory merge lock for crash recovery."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from foldersync.config import DEFAULT_LOCK_STALE_SECONDS, MERGE_LOCK_FILE
from foldersync.errors import CorruptLock
from foldersync.models.merge import MergeLockInfo
from foldersync.storage.base import StorageProvider

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MergeLockManager:
    """Write, read, and expire the folder's merge lock marker.

    The lock is not a mutex.  It records who started a merge and when, so
    that an overlapping cycle is skipped and a crash mid-merge is visible
    on the next open.  Locks older than the staleness threshold are treated
    as abandoned and removed.

    Parameters
    ----------
    storage:
        The shared folder.
    stale_after:
        Lock age in seconds after which it is considered abandoned.
    clock:
        Returns the current time; defaults to UTC now.
    """

    def __init__(
        self,
        storage: StorageProvider,
        stale_after: float = DEFAULT_LOCK_STALE_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self.stale_after = stale_after
        self._clock = clock or _utc_now

    def create_merge_lock(
        self,
        author: str,
        working_files: list[str],
        session: str = "",
    ) -> MergeLockInfo:
        """Write the lock marker, replacing any previous one."""
        lock = MergeLockInfo(
            author=author,
            started_at=self._clock(),
            working_files=list(working_files),
            session=session,
        )
        self.storage.write_text(MERGE_LOCK_FILE, lock.model_dump_json(indent=2))
        logger.info("Created merge lock for %s (%d file(s))", author, len(working_files))
        return lock

    def remove_merge_lock(self) -> bool:
        """Remove the lock marker.

        Returns True if a lock was removed, False if there was none.
        """
        try:
            self.storage.delete(MERGE_LOCK_FILE)
        except FileNotFoundError:
            logger.debug("Merge lock not found (already removed or never created)")
            return False
        logger.info("Removed merge lock")
        return True

    def read_merge_lock(self) -> MergeLockInfo | None:
        """Parse the lock marker without judging its age.

        Raises
        ------
        CorruptLock
            If the marker exists but cannot be parsed.
        """
        try:
            text = self.storage.read_text(MERGE_LOCK_FILE)
        except FileNotFoundError:
            return None
        try:
            return MergeLockInfo.model_validate_json(text)
        except (ValidationError, ValueError) as exc:
            raise CorruptLock(f"Unreadable merge lock: {exc}") from exc

    def check_merge_lock(self) -> MergeLockInfo | None:
        """Return the current lock if present and fresh, else None.

        Stale and unreadable locks are removed as a side effect.
        """
        try:
            lock = self.read_merge_lock()
        except CorruptLock:
            logger.warning("Removing unreadable merge lock", exc_info=True)
            self.remove_merge_lock()
            return None

        if lock is None:
            return None

        if self.is_stale(lock):
            logger.info(
                "Found stale merge lock held by %s since %s, removing",
                lock.author, lock.started_at.isoformat(),
            )
            self.remove_merge_lock()
            return None

        return lock

    def is_stale(self, lock: MergeLockInfo) -> bool:
        return self.age(lock) > self.stale_after

    def age(self, lock: MergeLockInfo) -> float:
        """Lock age in seconds."""
        return (_aware(self._clock()) - _aware(lock.started_at)).total_seconds()


def _aware(moment: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment
