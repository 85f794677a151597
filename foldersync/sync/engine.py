"""SyncEngine — main entry point for folder-based multi-user synchronization.

The engine owns one shared folder session for one author.  Each cycle
scans the folder, merges every participant's edits into the base, commits
clean results immediately and pauses for caller-supplied resolutions when
conflicts remain.  Cycles run on a periodic ``threading.Timer`` or on
demand; a cycle that finds another one running is skipped, not queued.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from foldersync.errors import (
    AlreadyExists,
    CorruptChangeFile,
    InvalidState,
    MissingBase,
    SyncError,
)
from foldersync.models.merge import ConflictResolution, MergeConflict, MergeLockInfo
from foldersync.models.schema import DatabaseSchema
from foldersync.settings import SyncSettings
from foldersync.storage.base import StorageProvider
from foldersync.sync.conflict import IdFactory, MergeResult, merge, resolve
from foldersync.sync.events import EventDispatcher
from foldersync.sync.files import (
    ChangeFileManager,
    FolderScanResult,
    parse_change_file_name,
)
from foldersync.sync.notifications import NotificationProvider, SyncStatus
from foldersync.sync.snapshot import Snapshot
from foldersync.sync.tracker import ChangeTracker

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncState(str, Enum):
    """Engine state machine."""

    IDLE = "idle"
    SCANNING = "scanning"
    MERGING = "merging"
    AWAITING_RESOLUTION = "awaiting_resolution"
    ERROR = "error"


@dataclass
class SyncOutcome:
    """What one cycle (or one resolution step) did."""

    state: SyncState
    status: SyncStatus
    conflicts: list[MergeConflict] = field(default_factory=list)
    merged_authors: list[str] = field(default_factory=list)
    message: str = ""
    snapshot: Snapshot | None = None
    """The new base after a commit."""


@dataclass
class Participant:
    """One author's state in a merge, plus the files it was built from."""

    author: str
    state: Snapshot
    files: list[str] = field(default_factory=list)


class MergeSession:
    """Left fold of every participant's state into the base.

    The running result is side A; each further participant is side B.  The
    fold pauses at the first step with conflicts until :meth:`resolve`.
    """

    def __init__(
        self,
        base: Snapshot,
        participants: list[Participant],
        id_factory: IdFactory | None = None,
    ) -> None:
        self.base = base
        self.participants = participants
        self.id_factory = id_factory
        self.pending: MergeResult | None = None
        if participants:
            self.running = participants[0].state
            self.label = participants[0].author
        else:
            self.running = base.copy()
            self.label = ""
        self._index = 1

    @property
    def complete(self) -> bool:
        return self.pending is None and self._index >= len(self.participants)

    @property
    def authors(self) -> list[str]:
        return [p.author for p in self.participants]

    @property
    def consumed_files(self) -> list[str]:
        return [name for p in self.participants for name in p.files]

    @property
    def is_noop(self) -> bool:
        """True when no participant changed anything and no change file
        would be consumed."""
        if any(parse_change_file_name(n) for n in self.consumed_files):
            return False
        return all(p.state.same_content_as(self.base) for p in self.participants)

    def advance(self) -> MergeResult | None:
        """Merge forward until a step has conflicts (returned) or the fold ends."""
        while self._index < len(self.participants):
            other = self.participants[self._index]
            result = merge(
                self.base, self.running, other.state,
                label_a=self.label, label_b=other.author,
            )
            if result.has_conflicts:
                self.pending = result
                return result
            self._accept(result.merged, other)
        return None

    def resolve(self, resolutions: list[ConflictResolution]) -> MergeResult | None:
        """Apply resolutions to the paused step, then keep folding."""
        if self.pending is None:
            raise InvalidState("No merge step is waiting for resolutions.")
        merged = resolve(
            self.pending.conflicts, resolutions, self.pending,
            id_factory=self.id_factory,
        )
        self.pending = None
        self._accept(merged, self.participants[self._index])
        return self.advance()

    def _accept(self, merged: Snapshot, other: Participant) -> None:
        self.running = merged
        self.label = f"{self.label}+{other.author}"
        self._index += 1


class SyncEngine:
    """Folder sync orchestrator for one author and one shared folder.

    Parameters
    ----------
    storage:
        The shared folder.
    author:
        Identity of the local user (e.g. an e-mail address).
    schema:
        The tracked tables.
    settings:
        Polling interval, retention, checkpoint and lock thresholds.
    tracker:
        Change tracker fed by the application; one is created if omitted.
    clock:
        Returns the current time; defaults to UTC now.
    timer_factory:
        Builds the periodic timer; ``threading.Timer`` by default.
    notification_providers:
        Extra receivers for status and merge events.
    state_path:
        Optional local JSON file persisting the last checkpoint time.
    id_factory:
        Mints identifiers when both colliding inserts are kept.
    """

    def __init__(
        self,
        storage: StorageProvider,
        author: str,
        schema: DatabaseSchema,
        *,
        settings: SyncSettings | None = None,
        tracker: ChangeTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        timer_factory: Callable[[float, Callable[[], None]], Any] | None = None,
        notification_providers: list[NotificationProvider] | None = None,
        state_path: str | Path | None = None,
        id_factory: IdFactory | None = None,
    ) -> None:
        self.author = author
        self.schema = schema
        self.settings = settings or SyncSettings()
        self._clock = clock or _utc_now
        self.files = ChangeFileManager(
            storage,
            lock_stale_after=self.settings.lock_stale_seconds,
            clock=self._clock,
        )
        self.tracker = tracker or ChangeTracker(author, self._clock)
        self.events = EventDispatcher(notification_providers)
        self.session_id = uuid.uuid4().hex
        self.id_factory = id_factory

        self._timer_factory = timer_factory or threading.Timer
        self._timer: Any = None
        self._running = False
        self._interval = self.settings.poll_interval_seconds

        self._busy = threading.Lock()
        self._state = SyncState.IDLE
        self._session: MergeSession | None = None

        self.working: Snapshot | None = None
        self.last_error: str | None = None
        self.recovered_lock: MergeLockInfo | None = None

        self._state_path = Path(state_path) if state_path else None
        self.last_checkpoint: datetime | None = self._load_state().get("last_checkpoint")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_conflicts(self) -> list[MergeConflict]:
        session = self._session
        if session is None or session.pending is None:
            return []
        return list(session.pending.conflicts)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def open(self) -> Snapshot:
        """Prepare the folder for this author and return the working snapshot.

        Creates an empty base if the folder has none, reports a merge lock
        left behind by a crashed session, forks (or reuses) the author's
        working file and sweeps old backups.
        """
        with self._busy:
            lock = self.files.check_merge_lock()
            if lock is not None and lock.session != self.session_id:
                self.recovered_lock = lock
                logger.warning(
                    "Merge started by %s at %s did not finish; files: %s",
                    lock.author, lock.started_at.isoformat(), ", ".join(lock.working_files),
                )
                self.events.on_recovery(
                    self.author,
                    f"A merge started by {lock.author} at "
                    f"{lock.started_at.isoformat()} may have failed",
                )

            scan = self.files.scan_folder(self.author)
            if scan.base is None:
                try:
                    self.files.create_base(Snapshot(self.schema).to_bytes())
                except AlreadyExists:
                    logger.debug("Base appeared concurrently; using it")

            try:
                info = self.files.create_working_file_from_base(self.author)
            except AlreadyExists:
                info = self.files.scan_folder(self.author).my_working_file
                logger.info("Reusing existing working file for %s", self.author)

            name = info.name if info is not None else None
            if name is None:
                raise SyncError(f"No working file available for {self.author}.")
            self.working = Snapshot.from_bytes(self.files.read_file(name), self.schema, name)

            self.files.cleanup_old_backups(self.settings.backup_retention_days)
            return self.working

    def save(self, snapshot: Snapshot) -> str | None:
        """Persist the author's working copy and flush tracked changes.

        Writes the working file atomically, then drains the tracker into a
        new change file.  On failure the drained changes are re-buffered
        and the error propagates.  Returns the change file name, if any.
        """
        changes = self.tracker.drain()
        try:
            self.files.save_working_file(self.author, snapshot.to_bytes())
            name = self.files.write_change_file(self.author, changes) if changes else None
        except (OSError, SyncError):
            self.tracker.requeue(changes)
            raise
        self.working = snapshot
        return name

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self, interval_seconds: float | None = None) -> None:
        """Begin periodic scanning every *interval_seconds*."""
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
            self._interval = interval_seconds
        self._running = True
        self._schedule_next()
        logger.info("Scheduled folder sync every %.1f seconds", self._interval)

    def stop(self) -> None:
        """Stop the periodic schedule.  A pending resolution is kept."""
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("Stopped folder sync schedule")

    def force_sync_now(self) -> SyncOutcome | None:
        """Run one cycle now.  Returns None if the cycle was skipped."""
        if not self._busy.acquire(blocking=False):
            logger.debug("Sync cycle skipped: previous cycle still running")
            return None
        try:
            if self._state is SyncState.AWAITING_RESOLUTION:
                logger.debug("Sync cycle skipped: waiting for conflict resolution")
                return None
            return self._run_cycle()
        finally:
            self._busy.release()

    def _schedule_next(self) -> None:
        if not self._running:
            return
        self._timer = self._timer_factory(self._interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        """Timer callback: one cycle, then reschedule."""
        if not self._running:
            return
        try:
            self.force_sync_now()
        except Exception:
            logger.exception("Scheduled sync cycle failed")
        finally:
            self._schedule_next()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _run_cycle(self) -> SyncOutcome:
        self._set_state(SyncState.SCANNING)
        self.events.on_status(self.author, SyncStatus.SYNCING)
        lock_taken = False
        try:
            scan = self.files.scan_folder(self.author)
            self.files.cleanup_old_backups(self.settings.backup_retention_days)
            if scan.base is None:
                raise MissingBase("The shared folder has no base snapshot.")
            if scan.my_working_file is None:
                # Archived by someone else's merge; fork again from the new base.
                self._refork(Snapshot.from_bytes(
                    self.files.read_file(scan.base), self.schema, scan.base,
                ))
                scan = self.files.scan_folder(self.author)

            me = self.author.casefold()
            peer_changes = any(cf.author.casefold() != me for cf in scan.change_files)
            checkpoint = False
            if not scan.needs_merge and not peer_changes:
                if scan.my_working_file is None or not self.files.should_checkpoint(
                    self.last_checkpoint, self.settings.checkpoint_interval_days,
                ):
                    return self._finish(SyncStatus.SYNCED, "No peer changes")
                checkpoint = True

            lock = self.files.check_merge_lock()
            if lock is not None and lock.session != self.session_id:
                if lock.author.casefold() != me:
                    msg = f"Merge in progress by {lock.author}"
                    logger.info("Sync cycle deferred: %s", msg)
                    return self._finish(SyncStatus.SYNCING, msg)
                logger.warning(
                    "Taking over merge lock left by an earlier session of %s", lock.author,
                )
                self.events.on_recovery(self.author, "Previous merge did not finish; retrying")

            self.files.create_merge_lock(
                self.author, [wf.name for wf in scan.working_files], self.session_id,
            )
            lock_taken = True
            self.events.on_lock(self.author, "merge started")
            self._set_state(SyncState.MERGING)

            session = self._build_session(scan)
            if session.is_noop:
                self._release_lock()
                if checkpoint:
                    self._record_checkpoint()
                return self._finish(SyncStatus.SYNCED, "Nothing to merge")

            pending = session.advance()
            if pending is not None:
                return self._await_resolution(session, pending)
            return self._commit(session, checkpoint=checkpoint)
        except (OSError, SyncError) as exc:
            return self._fail(exc, remove_lock=lock_taken)
        except Exception as exc:
            logger.exception("Unexpected error during sync cycle")
            return self._fail(exc, remove_lock=lock_taken)

    def _build_session(self, scan: FolderScanResult) -> MergeSession:
        """Load the base and every participant's state."""
        assert scan.base is not None
        base = Snapshot.from_bytes(self.files.read_file(scan.base), self.schema, scan.base)

        participants: list[Participant] = []
        for author in scan.authors():
            state: Snapshot | None = None
            used: list[str] = []

            change_files = scan.change_files_for(author)
            if change_files:
                changes, read = self.files.load_changes(change_files)
                if read:
                    state = base.apply_changes(changes)
                    used.extend(read)

            working = scan.working_file_for(author)
            if working is not None:
                if state is None:
                    try:
                        state = Snapshot.from_bytes(
                            self.files.read_file(working.name), self.schema, working.name,
                        )
                    except CorruptChangeFile as exc:
                        logger.warning("Skipping participant %s: %s", author, exc)
                        continue
                used.append(working.name)

            if state is None:
                continue
            participants.append(Participant(author=author, state=state, files=used))

        logger.info(
            "Merging %d participant(s): %s",
            len(participants), ", ".join(p.author for p in participants),
        )
        return MergeSession(base, participants, self.id_factory)

    def _await_resolution(self, session: MergeSession, pending: MergeResult) -> SyncOutcome:
        self._session = session
        self._set_state(SyncState.AWAITING_RESOLUTION)
        msg = (
            f"{len(pending.conflicts)} conflict(s) between "
            f"{pending.label_a} and {pending.label_b}"
        )
        self.events.on_conflict(self.author, len(pending.conflicts), msg)
        self.events.on_status(self.author, SyncStatus.CONFLICT_PENDING, msg)
        return SyncOutcome(
            state=SyncState.AWAITING_RESOLUTION,
            status=SyncStatus.CONFLICT_PENDING,
            conflicts=list(pending.conflicts),
            merged_authors=session.authors,
            message=msg,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def apply_resolutions(self, resolutions: list[ConflictResolution]) -> SyncOutcome:
        """Resolve the pending conflicts and commit the merged dataset.

        Raises
        ------
        InvalidState
            If no conflicts are awaiting resolution.
        UnresolvedConflict, InvalidResolution
            If the resolutions do not cover the conflicts; the pending
            state is kept so the caller can try again.
        """
        with self._busy:
            session = self._session
            if self._state is not SyncState.AWAITING_RESOLUTION or session is None:
                raise InvalidState("No conflicts are awaiting resolution.")

            pending = session.resolve(resolutions)
            if pending is not None:
                return self._await_resolution(session, pending)

            self._set_state(SyncState.MERGING)
            try:
                lock = self.files.locks.read_merge_lock()
                if lock is None or lock.session != self.session_id:
                    self._session = None
                    return self._fail(
                        SyncError("Merge lock was lost while waiting; nothing committed"),
                        remove_lock=False,
                    )
                return self._commit(session)
            except (OSError, SyncError) as exc:
                return self._fail(exc, remove_lock=True)
            except Exception as exc:
                logger.exception("Unexpected error while committing resolved merge")
                return self._fail(exc, remove_lock=True)

    def cancel_resolution(self) -> bool:
        """Abandon the pending merge without touching the base or working files.

        Returns True if a pending merge was abandoned.
        """
        with self._busy:
            if self._state is not SyncState.AWAITING_RESOLUTION:
                return False
            self._session = None
            self._release_lock()
            self._set_state(SyncState.IDLE)
            self.events.on_status(
                self.author, SyncStatus.SYNCING, "Merge cancelled; nothing committed",
            )
            logger.info("Pending merge cancelled by %s", self.author)
            return True

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(self, session: MergeSession, *, checkpoint: bool = False) -> SyncOutcome:
        merged = session.running
        self.files.update_base(merged.to_bytes())
        consumed = session.consumed_files
        for name in consumed:
            self.files.archive_file(name)
        self._release_lock()
        self._refork(merged)
        self._record_checkpoint()
        self._session = None

        if checkpoint:
            msg = "Working copy folded into base"
            self.events.on_checkpoint(self.author, msg)
        else:
            msg = f"Merged {len(session.participants)} participant(s)"
            self.events.on_merge(self.author, consumed, msg)
        return self._finish(
            SyncStatus.SYNCED, msg, merged_authors=session.authors, snapshot=merged,
        )

    def _refork(self, base: Snapshot) -> None:
        """Give the author a fresh working file forked from the new base."""
        try:
            self.files.create_working_file_from_base(self.author)
            self.working = base.copy()
        except AlreadyExists:
            logger.info("Working file for %s was re-saved during merge; keeping it", self.author)

    def _record_checkpoint(self) -> None:
        self.last_checkpoint = self._clock()
        self._save_state()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, status: SyncStatus, message: str, **extra: Any) -> SyncOutcome:
        self._set_state(SyncState.IDLE)
        self.last_error = None
        self.events.on_status(self.author, status, message)
        return SyncOutcome(state=SyncState.IDLE, status=status, message=message, **extra)

    def _fail(self, exc: Exception, *, remove_lock: bool) -> SyncOutcome:
        """Report an error and return to Idle; the next tick still runs."""
        message = str(exc) or type(exc).__name__
        logger.error("Sync cycle failed: %s", message)
        self.last_error = message
        self._set_state(SyncState.ERROR)
        self.events.on_status(self.author, SyncStatus.ERROR, message)
        if remove_lock:
            self._release_lock()
        self._session = None
        self._set_state(SyncState.IDLE)
        return SyncOutcome(state=SyncState.ERROR, status=SyncStatus.ERROR, message=message)

    def _release_lock(self) -> None:
        try:
            lock = self.files.locks.read_merge_lock()
        except (OSError, SyncError):
            logger.debug("Could not read merge lock before removal", exc_info=True)
            lock = None
        if lock is not None and lock.session != self.session_id:
            logger.info("Merge lock now belongs to %s; leaving it", lock.author)
            return
        try:
            self.files.remove_merge_lock()
        except OSError:
            logger.warning("Failed to remove merge lock", exc_info=True)

    def _set_state(self, state: SyncState) -> None:
        if state is not self._state:
            logger.debug("Sync state %s -> %s", self._state.value, state.value)
        self._state = state

    def _load_state(self) -> dict[str, Any]:
        """Load persisted engine state from disk."""
        if self._state_path is None or not self._state_path.is_file():
            return {}
        try:
            data = json.loads(self._state_path.read_text(encoding="utf-8"))
            stamp = data.get("last_checkpoint")
            return {"last_checkpoint": datetime.fromisoformat(stamp) if stamp else None}
        except (json.JSONDecodeError, OSError, ValueError, AttributeError):
            logger.debug("Could not read sync state", exc_info=True)
            return {}

    def _save_state(self) -> None:
        """Persist the last checkpoint time."""
        if self._state_path is None:
            return
        state = {
            "author": self.author,
            "last_checkpoint": self.last_checkpoint.isoformat() if self.last_checkpoint else None,
        }
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
        except OSError:
            logger.debug("Failed to save sync state", exc_info=True)
