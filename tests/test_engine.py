"""Tests for the SyncEngine cycle, resolution flow and scheduling."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from foldersync.errors import InvalidState, UnresolvedConflict
from foldersync.models.merge import ConflictKind, ConflictResolution
from foldersync.models.schema import DatabaseSchema, FieldType, TableSchema
from foldersync.storage.local import LocalFolderStorage
from foldersync.sync.engine import MergeSession, Participant, SyncEngine, SyncState
from foldersync.sync.locking import MergeLockManager
from foldersync.sync.notifications import CallbackNotifier, SyncStatus
from foldersync.sync.snapshot import Snapshot


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ALICE = "alice@co.com"
BOB = "bob@co.com"
CAROL = "carol@co.com"
LOCK = "schedule.merge-lock"


class _Clock:
    """Manually advanced clock shared by every engine in a test."""

    def __init__(self) -> None:
        self.now = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class _ManualTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    def __init__(self, interval: float, function) -> None:
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function()


class _TimerFactory:
    def __init__(self) -> None:
        self.timers: list[_ManualTimer] = []

    def __call__(self, interval: float, function) -> _ManualTimer:
        timer = _ManualTimer(interval, function)
        self.timers.append(timer)
        return timer


class _FailingStorage(LocalFolderStorage):
    """Local storage whose listing or writes can be switched off."""

    def __init__(self, root) -> None:
        super().__init__(root)
        self.fail_listing = False
        self.fail_writes = False

    def list_files(self) -> list[str]:
        if self.fail_listing:
            raise OSError("share unreachable")
        return super().list_files()

    def write_bytes(self, name: str, data: bytes) -> None:
        if self.fail_writes:
            raise PermissionError(f"Permission denied: {name}")
        super().write_bytes(name, data)


def _schema() -> DatabaseSchema:
    return DatabaseSchema(tables=[
        TableSchema(
            name="shifts",
            label="Shifts",
            columns={
                "name": FieldType.TEXT,
                "start_time": FieldType.TEXT,
                "end_time": FieldType.TEXT,
                "capacity": FieldType.INTEGER,
            },
        ),
    ])


def _shift(sync_id, name="Day", end="09:00", capacity=3) -> dict:
    return {
        "sync_id": sync_id,
        "name": name,
        "start_time": "08:00",
        "end_time": end,
        "capacity": capacity,
    }


def _seed(storage: LocalFolderStorage) -> None:
    """Shared folder with a base holding shift 5."""
    base = Snapshot(_schema(), {"shifts": [_shift(5)]})
    storage.write_bytes("schedule.base", base.to_bytes())


def _engine(storage, author, clock, **kwargs) -> SyncEngine:
    kwargs.setdefault("timer_factory", _TimerFactory())
    return SyncEngine(storage, author, _schema(), clock=clock, **kwargs)


def _set_field(engine: SyncEngine, sync_id, field: str, value: Any) -> None:
    """Edit one field of the engine's working copy, track it, and save."""
    snap = engine.working.copy()
    row = dict(snap.get("shifts", sync_id))
    engine.tracker.track_update("shifts", sync_id, field, row[field], value)
    row[field] = value
    snap.put("shifts", row)
    engine.save(snap)


def _insert(engine: SyncEngine, row: dict) -> None:
    snap = engine.working.copy()
    engine.tracker.track_insert("shifts", row["sync_id"], row)
    snap.put("shifts", row)
    engine.save(snap)


def _base(storage) -> Snapshot:
    return Snapshot.from_bytes(storage.read_bytes("schedule.base"), _schema())


def _contents(storage) -> dict[str, bytes]:
    return {name: storage.read_bytes(name) for name in storage.list_files()}


def _resolve(conflicts, choice) -> list[ConflictResolution]:
    return [
        ConflictResolution(table=c.table, sync_id=c.sync_id, choice=choice)
        for c in conflicts
    ]


@pytest.fixture
def folder(tmp_path):
    storage = _FailingStorage(tmp_path / "shared")
    _seed(storage)
    return storage


@pytest.fixture
def clock():
    return _Clock()


# ---------------------------------------------------------------------------
# Opening a folder
# ---------------------------------------------------------------------------


class TestOpen:
    def test_forks_working_file(self, folder, clock):
        engine = _engine(folder, ALICE, clock)
        working = engine.open()
        assert working.get("shifts", 5)["name"] == "Day"
        assert folder.read_bytes("schedule.alice@co.com.db") == folder.read_bytes("schedule.base")

    def test_reuses_existing_working_file(self, folder, clock):
        first = _engine(folder, ALICE, clock)
        first.open()
        _set_field(first, 5, "name", "Mine")
        second = _engine(folder, ALICE, clock)
        assert second.open().get("shifts", 5)["name"] == "Mine"

    def test_creates_empty_base(self, tmp_path, clock):
        storage = LocalFolderStorage(tmp_path / "new")
        engine = _engine(storage, ALICE, clock)
        assert engine.open().count("shifts") == 0
        assert storage.exists("schedule.base")

    def test_reports_crashed_merge(self, folder, clock):
        MergeLockManager(folder, clock=clock).create_merge_lock(ALICE, ["x"], "old-session")
        engine = _engine(folder, ALICE, clock)
        engine.open()
        assert engine.recovered_lock.session == "old-session"
        assert any(e["type"] == "recovery" for e in engine.events.console.log)


# ---------------------------------------------------------------------------
# Sync cycle
# ---------------------------------------------------------------------------


class TestSyncCycle:
    def test_auto_merge_commits(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")

        outcome = bob.force_sync_now()
        assert outcome.status is SyncStatus.SYNCED
        assert outcome.merged_authors == [ALICE, BOB]
        assert _base(folder).get("shifts", 5)["end_time"] == "10:00"
        assert bob.state is SyncState.IDLE

        files = folder.list_files()
        assert LOCK not in files
        assert "schedule.alice@co.com.db" not in files
        assert "schedule.alice@co.com.db.bak.2025-03-10" in files
        assert not any(name.endswith(".changes") for name in files)
        # bob is forked again from the new base
        assert folder.read_bytes("schedule.bob@co.com.db") == folder.read_bytes("schedule.base")
        assert bob.working.get("shifts", 5)["end_time"] == "10:00"

    def test_no_peers_no_checkpoint_due(self, folder, clock):
        engine = _engine(folder, ALICE, clock)
        engine.open()
        engine.last_checkpoint = clock.now
        before = _contents(folder)
        outcome = engine.force_sync_now()
        assert outcome.status is SyncStatus.SYNCED
        assert _contents(folder) == before

    def test_archived_peer_reforks(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")
        bob.force_sync_now()

        outcome = alice.force_sync_now()
        assert outcome.status is SyncStatus.SYNCED
        assert outcome.conflicts == []
        assert folder.exists("schedule.alice@co.com.db")
        assert alice.working.get("shifts", 5)["end_time"] == "10:00"

    def test_unchanged_copies_do_not_commit(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        before = _contents(folder)
        outcome = bob.force_sync_now()
        assert outcome.message == "Nothing to merge"
        assert _contents(folder) == before

    def test_peer_change_files_alone_trigger_merge(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        bob.last_checkpoint = clock.now
        _set_field(alice, 5, "capacity", 9)
        folder.delete("schedule.alice@co.com.db")

        outcome = bob.force_sync_now()
        assert outcome.merged_authors == [ALICE, BOB]
        assert _base(folder).get("shifts", 5)["capacity"] == 9

    def test_working_file_used_without_change_files(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        snap = alice.working.copy()
        snap.put("shifts", _shift(6, name="Late"))
        alice.save(snap)

        bob.force_sync_now()
        assert _base(folder).get("shifts", 6)["name"] == "Late"

    def test_corrupt_change_file_is_skipped(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")
        bad = "schedule.alice@co.com.20250101T000000000000Z.changes"
        folder.write_bytes(bad, b"{broken")

        outcome = bob.force_sync_now()
        assert outcome.status is SyncStatus.SYNCED
        assert _base(folder).get("shifts", 5)["end_time"] == "10:00"
        assert folder.exists(bad)

    def test_other_authors_lock_defers(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")
        MergeLockManager(folder, clock=clock).create_merge_lock(CAROL, [], "elsewhere")
        base_before = folder.read_bytes("schedule.base")

        outcome = bob.force_sync_now()
        assert outcome.status is SyncStatus.SYNCING
        assert CAROL in outcome.message
        assert folder.read_bytes("schedule.base") == base_before
        assert json.loads(folder.read_text(LOCK))["author"] == CAROL

    def test_stale_lock_is_cleared(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")
        MergeLockManager(folder, clock=clock).create_merge_lock(CAROL, [], "elsewhere")
        clock.advance(hours=1, seconds=1)

        assert bob.force_sync_now().status is SyncStatus.SYNCED
        assert not folder.exists(LOCK)

    def test_own_crashed_lock_is_taken_over(self, folder, clock):
        MergeLockManager(folder, clock=clock).create_merge_lock(BOB, [], "crashed")
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")

        assert bob.force_sync_now().status is SyncStatus.SYNCED
        assert not folder.exists(LOCK)

    def test_three_participants_fold(self, folder, clock):
        engines = [_engine(folder, who, clock) for who in (ALICE, BOB, CAROL)]
        for engine in engines:
            engine.open()
        alice, bob, carol = engines
        _set_field(alice, 5, "name", "AM Shift")
        _set_field(bob, 5, "end_time", "10:00")
        _set_field(carol, 5, "name", "Morning")

        outcome = carol.force_sync_now()
        assert outcome.state is SyncState.AWAITING_RESOLUTION
        [conflict] = outcome.conflicts
        assert conflict.modified_by_a == ALICE
        assert conflict.modified_by_b == CAROL

        final = carol.apply_resolutions(_resolve(outcome.conflicts, "b"))
        assert final.merged_authors == [ALICE, BOB, CAROL]
        row = _base(folder).get("shifts", 5)
        assert (row["name"], row["end_time"]) == ("Morning", "10:00")


# ---------------------------------------------------------------------------
# Conflicts and resolution
# ---------------------------------------------------------------------------


class TestConflictFlow:
    def _conflicted(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "name", "AM Shift")
        _set_field(bob, 5, "name", "Morning")
        return alice, bob

    def test_conflict_pauses_for_resolution(self, folder, clock):
        _, bob = self._conflicted(folder, clock)
        base_before = folder.read_bytes("schedule.base")
        outcome = bob.force_sync_now()

        assert outcome.state is SyncState.AWAITING_RESOLUTION
        assert outcome.status is SyncStatus.CONFLICT_PENDING
        [conflict] = outcome.conflicts
        assert (conflict.table, conflict.sync_id) == ("shifts", 5)
        assert conflict.kind is ConflictKind.UPDATE_UPDATE
        assert "name" in conflict.differing_fields
        assert bob.state is SyncState.AWAITING_RESOLUTION
        assert bob.pending_conflicts == outcome.conflicts
        assert folder.read_bytes("schedule.base") == base_before
        assert folder.exists(LOCK)

    def test_cycles_skip_while_awaiting(self, folder, clock):
        _, bob = self._conflicted(folder, clock)
        bob.force_sync_now()
        assert bob.force_sync_now() is None

    @pytest.mark.parametrize("choice, expected", [("a", "AM Shift"), ("b", "Morning"), ("base", "Day")])
    def test_apply_resolutions_commits(self, folder, clock, choice, expected):
        _, bob = self._conflicted(folder, clock)
        outcome = bob.force_sync_now()
        final = bob.apply_resolutions(_resolve(outcome.conflicts, choice))

        assert final.status is SyncStatus.SYNCED
        assert bob.state is SyncState.IDLE
        assert _base(folder).get("shifts", 5)["name"] == expected
        files = folder.list_files()
        assert LOCK not in files
        assert "schedule.alice@co.com.db" not in files
        assert not any(name.endswith(".changes") for name in files)

    def test_second_round_has_no_conflicts(self, folder, clock):
        alice, bob = self._conflicted(folder, clock)
        outcome = bob.force_sync_now()
        bob.apply_resolutions(_resolve(outcome.conflicts, "a"))
        base_after = folder.read_bytes("schedule.base")

        again = bob.force_sync_now()
        assert again.conflicts == []
        assert alice.force_sync_now().conflicts == []
        assert folder.read_bytes("schedule.base") == base_after

    def test_missing_resolution_keeps_pending(self, folder, clock):
        _, bob = self._conflicted(folder, clock)
        bob.force_sync_now()
        with pytest.raises(UnresolvedConflict):
            bob.apply_resolutions([])
        assert bob.state is SyncState.AWAITING_RESOLUTION
        assert len(bob.pending_conflicts) == 1

    def test_apply_when_idle_raises(self, folder, clock):
        engine = _engine(folder, ALICE, clock)
        with pytest.raises(InvalidState):
            engine.apply_resolutions([])

    def test_cancel_leaves_folder_untouched(self, folder, clock):
        _, bob = self._conflicted(folder, clock)
        before = _contents(folder)
        bob.force_sync_now()

        assert bob.cancel_resolution()
        assert bob.state is SyncState.IDLE
        assert bob.pending_conflicts == []
        assert _contents(folder) == before
        assert not bob.cancel_resolution()

    def test_cancelled_merge_is_offered_again(self, folder, clock):
        _, bob = self._conflicted(folder, clock)
        bob.force_sync_now()
        bob.cancel_resolution()
        assert bob.force_sync_now().state is SyncState.AWAITING_RESOLUTION

    def test_lost_lock_aborts_commit(self, folder, clock):
        _, bob = self._conflicted(folder, clock)
        outcome = bob.force_sync_now()
        base_before = folder.read_bytes("schedule.base")
        MergeLockManager(folder, clock=clock).create_merge_lock(CAROL, [], "elsewhere")

        final = bob.apply_resolutions(_resolve(outcome.conflicts, "a"))
        assert final.status is SyncStatus.ERROR
        assert bob.state is SyncState.IDLE
        assert folder.read_bytes("schedule.base") == base_before
        assert json.loads(folder.read_text(LOCK))["author"] == CAROL

    def test_insert_collision_keep_both(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _insert(alice, _shift(42, name="Early"))
        _insert(bob, _shift(42, name="Late", capacity=6))

        outcome = bob.force_sync_now()
        [conflict] = outcome.conflicts
        assert conflict.kind is ConflictKind.INSERT_INSERT

        bob.apply_resolutions(_resolve(outcome.conflicts, "both"))
        base = _base(folder)
        assert base.get("shifts", 42)["name"] == "Early"
        assert base.get("shifts", 43)["name"] == "Late"
        assert base.get("shifts", 43)["capacity"] == 6


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------


class TestCheckpoint:
    def test_solo_user_folds_into_base(self, folder, clock, tmp_path):
        state = tmp_path / "local" / "state.json"
        engine = _engine(folder, ALICE, clock, state_path=state)
        engine.open()
        _set_field(engine, 5, "name", "AM Shift")

        outcome = engine.force_sync_now()
        assert outcome.status is SyncStatus.SYNCED
        assert _base(folder).get("shifts", 5)["name"] == "AM Shift"
        assert any(e["type"] == "checkpoint" for e in engine.events.console.log)
        assert json.loads(state.read_text(encoding="utf-8"))["last_checkpoint"] == clock.now.isoformat()

    def test_checkpoint_waits_for_interval(self, folder, clock):
        engine = _engine(folder, ALICE, clock)
        engine.open()
        engine.force_sync_now()
        _set_field(engine, 5, "name", "Evening")

        clock.advance(days=3)
        engine.force_sync_now()
        assert _base(folder).get("shifts", 5)["name"] == "Day"

        clock.advance(seconds=1)
        engine.force_sync_now()
        assert _base(folder).get("shifts", 5)["name"] == "Evening"

    def test_last_checkpoint_survives_restart(self, folder, clock, tmp_path):
        state = tmp_path / "state.json"
        first = _engine(folder, ALICE, clock, state_path=state)
        first.open()
        first.force_sync_now()

        second = _engine(folder, ALICE, clock, state_path=state)
        assert second.last_checkpoint == clock.now


# ---------------------------------------------------------------------------
# Errors and scheduling
# ---------------------------------------------------------------------------


class TestErrors:
    def test_io_failure_reports_error_and_recovers(self, folder, clock):
        engine = _engine(folder, ALICE, clock)
        engine.open()
        folder.fail_listing = True

        outcome = engine.force_sync_now()
        assert outcome.status is SyncStatus.ERROR
        assert "share unreachable" in outcome.message
        assert engine.state is SyncState.IDLE
        assert engine.last_error == "share unreachable"
        assert engine.events.console.log[-1]["status"] == "error"

        folder.fail_listing = False
        assert engine.force_sync_now().status is SyncStatus.SYNCED
        assert engine.last_error is None

    def test_failed_commit_removes_lock(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")
        base_before = folder.read_bytes("schedule.base")
        original = folder.write_bytes

        def _refuse_base(name, data):
            if name == "schedule.base":
                raise PermissionError("read-only share")
            original(name, data)

        folder.write_bytes = _refuse_base
        outcome = bob.force_sync_now()
        assert outcome.status is SyncStatus.ERROR
        assert not folder.exists(LOCK)
        assert folder.read_bytes("schedule.base") == base_before
        assert folder.exists("schedule.alice@co.com.db")

    def test_unreadable_peer_working_file_is_skipped(self, folder, clock):
        alice = _engine(folder, ALICE, clock)
        alice.open()
        text_ids = DatabaseSchema(tables=[
            TableSchema(name="shifts", id_type=FieldType.TEXT, columns={"name": FieldType.TEXT}),
        ])
        foreign = Snapshot(text_ids, {"shifts": [{"sync_id": "abc", "name": "Day"}]})
        folder.write_bytes("schedule.bob@co.com.db", foreign.to_bytes())
        base_before = folder.read_bytes("schedule.base")

        outcome = alice.force_sync_now()
        assert outcome.status is SyncStatus.SYNCED
        assert outcome.message == "Nothing to merge"
        assert alice.state is SyncState.IDLE
        assert not folder.exists(LOCK)
        assert folder.exists("schedule.bob@co.com.db")
        assert folder.read_bytes("schedule.base") == base_before

    def test_unexpected_error_releases_lock(self, folder, clock):
        alice, bob = _engine(folder, ALICE, clock), _engine(folder, BOB, clock)
        alice.open()
        bob.open()
        _set_field(alice, 5, "end_time", "10:00")
        original = folder.read_bytes

        def _explode(name):
            if name == "schedule.base":
                raise RuntimeError("driver bug")
            return original(name)

        folder.read_bytes = _explode
        outcome = bob.force_sync_now()
        assert outcome.status is SyncStatus.ERROR
        assert outcome.message == "driver bug"
        assert bob.state is SyncState.IDLE
        assert bob.last_error == "driver bug"
        assert bob.events.console.log[-1]["status"] == "error"
        assert not folder.exists(LOCK)

        folder.read_bytes = original
        assert bob.force_sync_now().status is SyncStatus.SYNCED
        assert _base(folder).get("shifts", 5)["end_time"] == "10:00"

    def test_missing_base(self, tmp_path, clock):
        engine = _engine(LocalFolderStorage(tmp_path), ALICE, clock)
        outcome = engine.force_sync_now()
        assert outcome.status is SyncStatus.ERROR
        assert "base" in outcome.message

    def test_save_failure_rebuffers_changes(self, folder, clock):
        engine = _engine(folder, ALICE, clock)
        engine.open()
        engine.tracker.track_update("shifts", 5, "name", "Day", "X")
        folder.fail_writes = True
        with pytest.raises(PermissionError):
            engine.save(engine.working)
        assert engine.tracker.pending == 1

    def test_busy_cycle_is_skipped(self, folder, clock):
        nested: list = []
        holder: dict[str, SyncEngine] = {}

        def _reenter(event):
            if event["status"] == "syncing" and not nested:
                nested.append(holder["engine"].force_sync_now())

        engine = _engine(
            folder, ALICE, clock, notification_providers=[CallbackNotifier(_reenter)],
        )
        holder["engine"] = engine
        engine.open()

        assert engine.force_sync_now().status is SyncStatus.SYNCED
        assert nested == [None]


class TestScheduling:
    def test_start_schedules_timer(self, folder, clock):
        timers = _TimerFactory()
        engine = _engine(folder, ALICE, clock, timer_factory=timers)
        engine.start(10)
        assert engine.is_running
        [timer] = timers.timers
        assert timer.interval == 10
        assert timer.started
        assert timer.daemon

    def test_default_interval_from_settings(self, folder, clock):
        timers = _TimerFactory()
        _engine(folder, ALICE, clock, timer_factory=timers).start()
        assert timers.timers[0].interval == 30.0

    def test_invalid_interval(self, folder, clock):
        with pytest.raises(ValueError):
            _engine(folder, ALICE, clock).start(0)

    def test_tick_reschedules_after_error(self, folder, clock):
        timers = _TimerFactory()
        engine = _engine(folder, ALICE, clock, timer_factory=timers)
        engine.open()
        engine.start(5)
        folder.fail_listing = True
        timers.timers[0].fire()
        assert len(timers.timers) == 2
        assert engine.last_error == "share unreachable"

    def test_stop_cancels(self, folder, clock):
        timers = _TimerFactory()
        engine = _engine(folder, ALICE, clock, timer_factory=timers)
        engine.start(5)
        engine.stop()
        assert not engine.is_running
        assert timers.timers[0].cancelled
        timers.timers[0].fire()
        assert len(timers.timers) == 1


# ---------------------------------------------------------------------------
# Merge session
# ---------------------------------------------------------------------------


class TestMergeSession:
    def test_single_participant_is_complete(self):
        base = Snapshot(_schema(), {"shifts": [_shift(5)]})
        mine = base.copy()
        mine.put("shifts", _shift(5, name="Mine"))
        session = MergeSession(base, [Participant(ALICE, mine, ["f"])])
        assert session.advance() is None
        assert session.complete
        assert session.running.get("shifts", 5)["name"] == "Mine"
        assert not session.is_noop

    def test_resolve_without_pending_raises(self):
        base = Snapshot(_schema())
        session = MergeSession(base, [])
        with pytest.raises(InvalidState):
            session.resolve([])
