"""foldersync — multi-user synchronization of a tabular dataset through a shared folder."""

__version__ = "1.0.0"

from foldersync.errors import (
    AlreadyExists,
    CorruptChangeFile,
    CorruptLock,
    InvalidResolution,
    InvalidState,
    MissingBase,
    SyncError,
    UnresolvedConflict,
)
from foldersync.models import (
    Change,
    ChangeBatch,
    Choice,
    ConflictKind,
    ConflictResolution,
    DatabaseSchema,
    FieldType,
    MergeConflict,
    MergeLockInfo,
    Operation,
    TableDiff,
    TableSchema,
)
from foldersync.settings import SyncSettings, load_settings
from foldersync.storage import LocalFolderStorage, StorageProvider
from foldersync.sync import (
    ChangeFileManager,
    ChangeTracker,
    Snapshot,
    SyncEngine,
    SyncOutcome,
    SyncState,
    SyncStatus,
    compare_snapshots,
    compute_conflicts,
    merge,
    resolve,
    take_tables,
)

__all__ = [
    "AlreadyExists",
    "Change",
    "ChangeBatch",
    "ChangeFileManager",
    "ChangeTracker",
    "Choice",
    "ConflictKind",
    "ConflictResolution",
    "CorruptChangeFile",
    "CorruptLock",
    "DatabaseSchema",
    "FieldType",
    "InvalidResolution",
    "InvalidState",
    "LocalFolderStorage",
    "MergeConflict",
    "MergeLockInfo",
    "MissingBase",
    "Operation",
    "Snapshot",
    "StorageProvider",
    "SyncEngine",
    "SyncError",
    "SyncOutcome",
    "SyncSettings",
    "SyncState",
    "SyncStatus",
    "TableDiff",
    "TableSchema",
    "UnresolvedConflict",
    "compare_snapshots",
    "compute_conflicts",
    "load_settings",
    "merge",
    "resolve",
    "take_tables",
]
