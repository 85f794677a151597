"""Per-table typed schema and tag-aware scalar comparison.

Rows are plain dicts of field name to scalar.  The schema closes the set of
fields per table and fixes each field's type, so rows loaded from a database
file or rebuilt from change replay can be checked and coerced in one place.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field

from foldersync.config import (
    BOOKKEEPING_FIELDS,
    MODIFIED_AT_FIELD,
    MODIFIED_BY_FIELD,
    SYNC_ID_FIELD,
)

Scalar = Union[str, int, float, bool, None]
SyncId = Union[int, str]
Row = dict[str, Any]


class FieldType(str, Enum):
    """Storage type of a declared field."""

    TEXT = "text"
    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self]


_SQL_TYPES = {
    FieldType.TEXT: "TEXT",
    FieldType.INTEGER: "INTEGER",
    FieldType.REAL: "REAL",
    FieldType.BOOLEAN: "INTEGER",
}


class SchemaError(ValueError):
    """A row does not fit its table schema."""


class TableSchema(BaseModel):
    """A tracked table: identifier type plus an ordered set of typed fields."""

    name: str
    columns: dict[str, FieldType] = Field(default_factory=dict)
    id_type: FieldType = FieldType.INTEGER
    label: str = ""

    def column_names(self) -> list[str]:
        """All columns in storage order, bookkeeping included."""
        return [SYNC_ID_FIELD, *self.columns, MODIFIED_AT_FIELD, MODIFIED_BY_FIELD]

    def has_field(self, name: str) -> bool:
        return name in self.columns

    def empty_row(self, sync_id: SyncId) -> Row:
        """A row with every declared field set to null."""
        row: Row = {SYNC_ID_FIELD: sync_id}
        for name in self.columns:
            row[name] = None
        row[MODIFIED_AT_FIELD] = None
        row[MODIFIED_BY_FIELD] = None
        return row

    def coerce_row(self, raw: dict[str, Any]) -> Row:
        """Return a copy of *raw* restricted to known columns with typed values.

        Raises
        ------
        SchemaError
            If the row has no identifier or a value cannot be coerced.
        """
        if raw.get(SYNC_ID_FIELD) is None:
            raise SchemaError(f"Row in '{self.name}' has no {SYNC_ID_FIELD}.")

        try:
            row: Row = {SYNC_ID_FIELD: coerce_value(raw[SYNC_ID_FIELD], self.id_type)}
        except (TypeError, ValueError) as exc:
            raise SchemaError(
                f"Row in '{self.name}' has an invalid {SYNC_ID_FIELD} "
                f"{raw[SYNC_ID_FIELD]!r}: {exc}"
            ) from exc
        for name, ftype in self.columns.items():
            try:
                row[name] = coerce_value(raw.get(name), ftype)
            except (TypeError, ValueError) as exc:
                raise SchemaError(
                    f"Field '{self.name}.{name}' cannot hold {raw.get(name)!r}: {exc}"
                ) from exc
        row[MODIFIED_AT_FIELD] = _optional_str(raw.get(MODIFIED_AT_FIELD))
        row[MODIFIED_BY_FIELD] = _optional_str(raw.get(MODIFIED_BY_FIELD))
        return row


class DatabaseSchema(BaseModel):
    """Ordered collection of tracked tables.

    Declaration order is significant: conflicts and comparisons are reported
    table by table in this order.
    """

    tables: list[TableSchema] = Field(default_factory=list)

    def __contains__(self, name: object) -> bool:
        return any(t.name == name for t in self.tables)

    def table(self, name: str) -> TableSchema:
        for table in self.tables:
            if table.name == name:
                return table
        raise KeyError(f"Unknown table '{name}'.")

    def table_names(self) -> list[str]:
        return [t.name for t in self.tables]


def coerce_value(value: Any, ftype: FieldType) -> Scalar:
    """Coerce a stored value to the Python type implied by *ftype*."""
    if value is None:
        return None
    if ftype is FieldType.TEXT:
        return str(value)
    if ftype is FieldType.BOOLEAN:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes")
        return bool(value)
    if ftype is FieldType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("not an integer")
        return int(value)
    if ftype is FieldType.REAL:
        if isinstance(value, bool):
            raise TypeError("boolean is not a real number")
        return float(value)
    raise TypeError(f"Unsupported field type {ftype!r}")


def value_tag(value: Any) -> int:
    """Comparison tag: null, boolean, number and text never compare equal."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 2
    return 3


def same_value(a: Any, b: Any) -> bool:
    """Tag-aware equality (``1 == 1.0`` but ``1 != True`` and ``1 != "1"``)."""
    return value_tag(a) == value_tag(b) and a == b


def content_fields(row: Row) -> dict[str, Any]:
    """The user-visible part of a row, bookkeeping columns removed."""
    return {k: v for k, v in row.items() if k not in BOOKKEEPING_FIELDS}


def same_content(a: Row | None, b: Row | None) -> bool:
    """True when two rows (or two absences) carry the same user data."""
    if a is None or b is None:
        return a is None and b is None
    ca, cb = content_fields(a), content_fields(b)
    if ca.keys() != cb.keys():
        return False
    return all(same_value(ca[k], cb[k]) for k in ca)


def differing_fields(a: Row, b: Row) -> list[str]:
    """Non-bookkeeping fields whose values differ between two rows."""
    keys = list(a) + [k for k in b if k not in a]
    return [
        k for k in keys
        if k not in BOOKKEEPING_FIELDS and not same_value(a.get(k), b.get(k))
    ]


def sync_id_key(sync_id: SyncId) -> tuple[int, int | float, str]:
    """Sort key putting integer identifiers (numerically) before text ones."""
    if isinstance(sync_id, (int, float)) and not isinstance(sync_id, bool):
        return (0, sync_id, "")
    return (1, 0, str(sync_id))


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
