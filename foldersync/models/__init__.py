"""Typed boundary data for the sync core."""

from foldersync.models.change import Change, ChangeBatch, Operation
from foldersync.models.merge import (
    Choice,
    ConflictKind,
    ConflictResolution,
    MergeConflict,
    MergeLockInfo,
    TableDiff,
)
from foldersync.models.schema import DatabaseSchema, FieldType, TableSchema

__all__ = [
    "Change",
    "ChangeBatch",
    "Choice",
    "ConflictKind",
    "ConflictResolution",
    "DatabaseSchema",
    "FieldType",
    "MergeConflict",
    "MergeLockInfo",
    "Operation",
    "TableDiff",
    "TableSchema",
]
