"""ChangeFileManager — naming, scanning, and lifecycle of shared-folder files.

Handles:
- Classifying a folder into base, working files, change files and backups
- Creating working files from the base
- Writing and reading change files
- Archiving consumed files to dated backups and sweeping old backups
- The merge lock and the solo-user checkpoint decision
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from pydantic import ValidationError

from foldersync.config import (
    BACKUP_DATE_FORMAT,
    BACKUP_FILE_PATTERN,
    BACKUP_MARKER,
    BASE_FILE_NAME,
    CHANGE_FILE_PATTERN,
    CHANGE_STAMP_FORMAT,
    DEFAULT_BACKUP_RETENTION_DAYS,
    DEFAULT_CHECKPOINT_DAYS,
    DEFAULT_LOCK_STALE_SECONDS,
    FILE_PREFIX,
    MERGE_LOCK_FILE,
    WORKING_FILE_PATTERN,
)
from foldersync.errors import CorruptChangeFile
from foldersync.models.change import Change, ChangeBatch
from foldersync.models.merge import MergeLockInfo
from foldersync.storage.base import StorageProvider
from foldersync.sync.locking import MergeLockManager

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Naming conventions
# ----------------------------------------------------------------------


def working_file_name(author: str) -> str:
    """``"john@co.com"`` → ``"schedule.john@co.com.db"``."""
    return f"{FILE_PREFIX}.{author}.db"


def author_from_working_file(name: str) -> str | None:
    """Author encoded in a working file name, or None if *name* is not one."""
    match = WORKING_FILE_PATTERN.match(name)
    return match.group(1) if match else None


def change_file_name(author: str, timestamp: datetime) -> str:
    """Change file name; the embedded UTC stamp sorts chronologically."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return f"{FILE_PREFIX}.{author}.{timestamp.strftime(CHANGE_STAMP_FORMAT)}.changes"


def parse_change_file_name(name: str) -> tuple[str, datetime] | None:
    """Return ``(author, timestamp)`` for a change file name, else None."""
    match = CHANGE_FILE_PATTERN.match(name)
    if not match:
        return None
    try:
        stamp = datetime.strptime(match.group(2), CHANGE_STAMP_FORMAT)
    except ValueError:
        return None
    return match.group(1), stamp.replace(tzinfo=timezone.utc)


def backup_file_name(name: str, day: date) -> str:
    """``"schedule.x.db"`` → ``"schedule.x.db.bak.2025-12-26"``."""
    return f"{name}{BACKUP_MARKER}.{day.strftime(BACKUP_DATE_FORMAT)}"


def parse_backup_date(name: str) -> date | None:
    """Date embedded in a backup file name, or None."""
    match = BACKUP_FILE_PATTERN.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), BACKUP_DATE_FORMAT).date()
    except ValueError:
        return None


# ----------------------------------------------------------------------
# Scan result
# ----------------------------------------------------------------------


@dataclass
class WorkingFileInfo:
    """A per-author working copy found in the folder."""

    name: str
    author: str


@dataclass
class ChangeFileInfo:
    """A change file found in the folder."""

    name: str
    author: str
    timestamp: datetime


@dataclass
class FolderScanResult:
    """Classification of a shared folder's contents."""

    base: str | None = None
    working_files: list[WorkingFileInfo] = field(default_factory=list)
    change_files: list[ChangeFileInfo] = field(default_factory=list)
    backup_files: list[str] = field(default_factory=list)
    my_working_file: WorkingFileInfo | None = None
    needs_merge: bool = False
    has_lock: bool = False

    def authors(self) -> list[str]:
        """Every author with a working file or change file, case-folded order."""
        seen: dict[str, str] = {}
        for wf in self.working_files:
            seen.setdefault(wf.author.casefold(), wf.author)
        for cf in self.change_files:
            seen.setdefault(cf.author.casefold(), cf.author)
        return [seen[k] for k in sorted(seen)]

    def change_files_for(self, author: str) -> list[ChangeFileInfo]:
        key = author.casefold()
        return sorted(
            (cf for cf in self.change_files if cf.author.casefold() == key),
            key=lambda cf: (cf.timestamp, cf.name),
        )

    def working_file_for(self, author: str) -> WorkingFileInfo | None:
        key = author.casefold()
        for wf in self.working_files:
            if wf.author.casefold() == key:
                return wf
        return None


# ----------------------------------------------------------------------
# Manager
# ----------------------------------------------------------------------


class ChangeFileManager:
    """File-level operations on one shared folder.

    Parameters
    ----------
    storage:
        The shared folder.
    lock_stale_after:
        Merge lock staleness threshold in seconds.
    clock:
        Returns the current time; defaults to UTC now.
    """

    def __init__(
        self,
        storage: StorageProvider,
        *,
        lock_stale_after: float = DEFAULT_LOCK_STALE_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self._clock = clock or _utc_now
        self.locks = MergeLockManager(storage, lock_stale_after, self._clock)

    # -- scanning ------------------------------------------------------

    def scan_folder(self, current_author: str) -> FolderScanResult:
        """Classify every file in the folder.

        Names matching no convention are ignored.  A merge is needed when a
        working file belongs to someone other than *current_author*.
        """
        result = FolderScanResult()
        me = current_author.casefold()

        for name in self.storage.list_files():
            if name == BASE_FILE_NAME:
                result.base = name
                continue

            if name == MERGE_LOCK_FILE:
                result.has_lock = True
                continue

            author = author_from_working_file(name)
            if author is not None:
                info = WorkingFileInfo(name=name, author=author)
                result.working_files.append(info)
                if author.casefold() == me:
                    result.my_working_file = info
                continue

            parsed = parse_change_file_name(name)
            if parsed is not None:
                result.change_files.append(
                    ChangeFileInfo(name=name, author=parsed[0], timestamp=parsed[1])
                )
                continue

            if BACKUP_FILE_PATTERN.match(name):
                result.backup_files.append(name)

        result.needs_merge = any(
            wf.author.casefold() != me for wf in result.working_files
        )
        return result

    # -- base and working files ----------------------------------------

    def read_file(self, name: str) -> bytes:
        return self.storage.read_bytes(name)

    def create_base(self, data: bytes) -> str:
        """Create the base snapshot; raise AlreadyExists if there is one."""
        self.storage.create(BASE_FILE_NAME, data)
        logger.info("Created new base file")
        return BASE_FILE_NAME

    def update_base(self, data: bytes) -> None:
        """Atomically replace the base snapshot."""
        self.storage.write_bytes(BASE_FILE_NAME, data)
        logger.info("Updated base file (%d bytes)", len(data))

    def create_working_file_from_base(self, author: str, base: str = BASE_FILE_NAME) -> WorkingFileInfo:
        """Copy the base's bytes verbatim into a new working file for *author*.

        Raises
        ------
        AlreadyExists
            If *author* already has a working file.
        """
        name = working_file_name(author)
        data = self.storage.read_bytes(base)
        self.storage.create(name, data)
        logger.info("Created working file: %s", name)
        return WorkingFileInfo(name=name, author=author)

    def save_working_file(self, author: str, data: bytes) -> str:
        """Atomically replace *author*'s working file with *data*."""
        name = working_file_name(author)
        self.storage.write_bytes(name, data)
        logger.debug("Saved working file %s (%d bytes)", name, len(data))
        return name

    # -- change files --------------------------------------------------

    def write_change_file(self, author: str, changes: list[Change]) -> str:
        """Write one immutable change file holding *changes*."""
        created = self._clock()
        name = change_file_name(author, created)
        batch = ChangeBatch(author=author, created_at=created, changes=changes)
        self.storage.create(name, batch.model_dump_json().encode("utf-8"))
        logger.info("Wrote change file %s (%d change(s))", name, len(changes))
        return name

    def read_change_file(self, name: str) -> ChangeBatch:
        """Parse a change file.

        Raises
        ------
        CorruptChangeFile
            If the content is not a valid change batch.
        """
        data = self.storage.read_bytes(name)
        try:
            return ChangeBatch.model_validate_json(data)
        except (ValidationError, ValueError) as exc:
            raise CorruptChangeFile(name, str(exc)) from exc

    def load_changes(self, files: list[ChangeFileInfo]) -> tuple[list[Change], list[str]]:
        """Read several change files, skipping corrupt ones.

        Returns ``(changes, names_read)``; *names_read* lists only the files
        that parsed, so skipped files are never archived.
        """
        changes: list[Change] = []
        read: list[str] = []
        for info in files:
            try:
                batch = self.read_change_file(info.name)
            except CorruptChangeFile as exc:
                logger.warning("Skipping %s", exc)
                continue
            changes.extend(batch.changes)
            read.append(info.name)
        return changes, read

    # -- archival and cleanup ------------------------------------------

    def archive_working_file(self, info: WorkingFileInfo) -> str:
        """Move a working file to a backup named with today's date."""
        return self.archive_file(info.name)

    def archive_file(self, name: str) -> str:
        """Move *name* to ``<name>.bak.<YYYY-MM-DD>``.

        The move is a single rename, so the backup appears in the same step
        that removes the original; on failure the original is untouched.
        """
        backup = backup_file_name(name, self._today())
        self.storage.rename(name, backup)
        logger.info("Archived %s -> %s", name, backup)
        return backup

    def cleanup_old_backups(self, max_age_days: int = DEFAULT_BACKUP_RETENTION_DAYS) -> int:
        """Delete backups dated *max_age_days* or more days ago.

        Failures on individual files are logged and skipped.  Returns the
        number of backups deleted.
        """
        cutoff = self._today() - timedelta(days=max_age_days)
        deleted = 0
        for name in self.storage.list_files():
            backup_date = parse_backup_date(name)
            if backup_date is None or backup_date > cutoff:
                continue
            try:
                self.storage.delete(name)
            except OSError as exc:
                logger.warning("Failed to delete backup %s: %s", name, exc)
                continue
            deleted += 1
            logger.info("Deleted old backup: %s", name)
        return deleted

    # -- merge lock ----------------------------------------------------

    def create_merge_lock(
        self, author: str, working_files: list[str], session: str = "",
    ) -> MergeLockInfo:
        return self.locks.create_merge_lock(author, working_files, session)

    def remove_merge_lock(self) -> bool:
        return self.locks.remove_merge_lock()

    def check_merge_lock(self) -> MergeLockInfo | None:
        return self.locks.check_merge_lock()

    # -- checkpoint ----------------------------------------------------

    def should_checkpoint(
        self,
        last_checkpoint: datetime | str | None,
        max_days: float = DEFAULT_CHECKPOINT_DAYS,
    ) -> bool:
        """True if there was no checkpoint yet or more than *max_days* elapsed."""
        if not last_checkpoint:
            return True
        if isinstance(last_checkpoint, str):
            try:
                last_checkpoint = datetime.fromisoformat(last_checkpoint)
            except ValueError:
                logger.debug("Unparseable checkpoint timestamp %r", last_checkpoint)
                return True
        if last_checkpoint.tzinfo is None:
            last_checkpoint = last_checkpoint.replace(tzinfo=timezone.utc)
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return (now - last_checkpoint) > timedelta(days=max_days)

    def _today(self) -> date:
        return self._clock().date()
