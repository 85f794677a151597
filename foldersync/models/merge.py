"""Merge boundary types shared with the presentation layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class ConflictKind(str, Enum):
    """How the two sides disagree about a row."""

    UPDATE_UPDATE = "update_update"
    DELETE_UPDATE = "delete_update"
    INSERT_INSERT = "insert_insert"


class Choice(str, Enum):
    """Resolution choice for a conflict."""

    BASE = "base"
    A = "a"
    B = "b"
    BOTH = "both"
    """Keep both rows; valid only for insert/insert collisions."""


class MergeConflict(BaseModel):
    """A detected disagreement between side A and side B on one row.

    ``row_a``/``row_b`` are the full candidate rows (``None`` when that side
    deleted the row) so a caller can show whole-row context.
    """

    table: str
    sync_id: Union[int, str]
    kind: ConflictKind
    row_a: Optional[dict[str, Any]] = None
    row_b: Optional[dict[str, Any]] = None
    row_base: Optional[dict[str, Any]] = None
    modified_by_a: str = ""
    modified_by_b: str = ""
    differing_fields: list[str] = Field(default_factory=list)
    description: str = ""

    @property
    def key(self) -> tuple[str, Union[int, str]]:
        return (self.table, self.sync_id)


class ConflictResolution(BaseModel):
    """The decision applied to a :class:`MergeConflict`."""

    table: str
    sync_id: Union[int, str]
    choice: Choice

    @property
    def key(self) -> tuple[str, Union[int, str]]:
        return (self.table, self.sync_id)


class MergeLockInfo(BaseModel):
    """Content of the advisory merge lock marker."""

    author: str
    started_at: datetime
    working_files: list[str] = Field(default_factory=list)
    session: str = ""
    """Token of the engine instance that wrote the lock."""


class TableDiff(BaseModel):
    """Whole-table comparison result between two snapshots."""

    table: str
    label: str = ""
    count_a: int = 0
    count_b: int = 0
    delta: int = 0
    """``count_b - count_a``."""

    difference_type: str = "none"
    """'none', 'count' or 'content'."""

    details: str = ""

    @property
    def has_differences(self) -> bool:
        return self.difference_type != "none"
