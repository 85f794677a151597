"""Folder sync — change tracking, three-way merge and the sync engine."""

from foldersync.sync.compare import compare_snapshots, take_tables
from foldersync.sync.conflict import (
    MergeResult,
    compute_conflicts,
    merge,
    resolve,
    resolve_all,
)
from foldersync.sync.engine import SyncEngine, SyncOutcome, SyncState
from foldersync.sync.events import EventDispatcher
from foldersync.sync.files import ChangeFileManager, FolderScanResult
from foldersync.sync.locking import MergeLockManager
from foldersync.sync.notifications import (
    CallbackNotifier,
    ConsoleNotifier,
    NotificationProvider,
    SyncStatus,
)
from foldersync.sync.snapshot import Snapshot
from foldersync.sync.tracker import ChangeTracker

__all__ = [
    "CallbackNotifier",
    "ChangeFileManager",
    "ChangeTracker",
    "ConsoleNotifier",
    "EventDispatcher",
    "FolderScanResult",
    "MergeLockManager",
    "MergeResult",
    "NotificationProvider",
    "Snapshot",
    "SyncEngine",
    "SyncOutcome",
    "SyncState",
    "SyncStatus",
    "compare_snapshots",
    "compute_conflicts",
    "merge",
    "resolve",
    "resolve_all",
    "take_tables",
]
