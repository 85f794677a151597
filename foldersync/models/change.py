"""Change records and change batches exchanged through the shared folder."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ChangeValue = Union[bool, int, float, str, None]


class Operation(str, Enum):
    """Kind of mutation a change records."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Change(BaseModel):
    """A single row- or field-level mutation.

    Immutable once created.  ``field`` is set for updates only; inserts
    create the row with null fields and deletes remove it.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    sync_id: Union[int, str]
    operation: Operation
    field: Optional[str] = None
    old_value: ChangeValue = None
    new_value: ChangeValue = None
    author: str
    timestamp: datetime
    sequence: int = 0
    """Insertion order within the author's tracker; breaks timestamp ties."""

    @property
    def order_key(self) -> tuple[datetime, str, int]:
        """Total order: timestamp, then author, then insertion sequence."""
        return (self.timestamp, self.author, self.sequence)


class ChangeBatch(BaseModel):
    """The content of one change file: every change from one save."""

    author: str
    created_at: datetime
    changes: list[Change] = Field(default_factory=list)


def ordered(changes: list[Change]) -> list[Change]:
    """Return *changes* sorted into their total order."""
    return sorted(changes, key=lambda c: c.order_key)
