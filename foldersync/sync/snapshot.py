"""Snapshot — an in-memory dataset of tracked tables, stored as SQLite bytes.

A snapshot is what the base file and every working file contain: one table
per declared :class:`TableSchema`, each row keyed by its ``sync_id``.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from collections.abc import Iterable
from typing import Any

from foldersync.config import MODIFIED_AT_FIELD, MODIFIED_BY_FIELD, SYNC_ID_FIELD
from foldersync.errors import CorruptChangeFile
from foldersync.hasher import Hasher
from foldersync.models.change import Change, Operation, ordered
from foldersync.models.schema import (
    DatabaseSchema,
    Row,
    SchemaError,
    SyncId,
    TableSchema,
    coerce_value,
    same_content,
    sync_id_key,
)

logger = logging.getLogger(__name__)


class Snapshot:
    """Rows of every tracked table, keyed by table name then ``sync_id``.

    Parameters
    ----------
    schema:
        The declared tables.  Tables not in the schema are never stored.
    tables:
        Optional initial rows per table; each row must carry ``sync_id``.
    """

    def __init__(
        self,
        schema: DatabaseSchema,
        tables: dict[str, Iterable[Row]] | None = None,
    ) -> None:
        self.schema = schema
        self._tables: dict[str, dict[SyncId, Row]] = {
            name: {} for name in schema.table_names()
        }
        for name, rows in (tables or {}).items():
            for row in rows:
                self.put(name, row)

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def rows(self, table: str) -> dict[SyncId, Row]:
        """Rows of *table* keyed by ``sync_id`` (the live mapping)."""
        return self._tables[table]

    def ordered_rows(self, table: str) -> list[Row]:
        """Rows of *table* in ascending ``sync_id`` order."""
        rows = self._tables[table]
        return [rows[k] for k in sorted(rows, key=sync_id_key)]

    def get(self, table: str, sync_id: SyncId) -> Row | None:
        return self._tables[table].get(sync_id)

    def put(self, table: str, row: Row) -> None:
        """Insert or replace a row, coercing it to the table schema."""
        coerced = self.schema.table(table).coerce_row(row)
        self._tables[table][coerced[SYNC_ID_FIELD]] = coerced

    def remove(self, table: str, sync_id: SyncId) -> Row | None:
        return self._tables[table].pop(sync_id, None)

    def sync_ids(self, table: str) -> set[SyncId]:
        return set(self._tables[table])

    def count(self, table: str) -> int:
        return len(self._tables[table])

    def copy(self) -> Snapshot:
        clone = Snapshot(self.schema)
        clone._tables = copy.deepcopy(self._tables)
        return clone

    def same_content_as(self, other: Snapshot) -> bool:
        """True if every table holds the same rows, ignoring bookkeeping."""
        for name in self.schema.table_names():
            mine, theirs = self._tables[name], other._tables.get(name, {})
            if mine.keys() != theirs.keys():
                return False
            if not all(same_content(mine[k], theirs[k]) for k in mine):
                return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self._tables == other._tables

    def __repr__(self) -> str:
        counts = ", ".join(f"{t}={len(r)}" for t, r in self._tables.items())
        return f"Snapshot({counts})"

    # ------------------------------------------------------------------
    # Change replay
    # ------------------------------------------------------------------

    def apply_changes(self, changes: Iterable[Change]) -> Snapshot:
        """Return a copy of this snapshot with *changes* replayed in order.

        Changes that cannot apply (unknown table or field, update of a
        missing row, duplicate insert) are skipped with a warning.
        """
        result = self.copy()
        for change in ordered(list(changes)):
            result._apply(change)
        return result

    def _apply(self, change: Change) -> None:
        if change.table not in self.schema:
            logger.warning("Skipping change for unknown table %s", change.table)
            return
        table = self.schema.table(change.table)
        rows = self._tables[change.table]
        try:
            sync_id = coerce_value(change.sync_id, table.id_type)
        except (TypeError, ValueError):
            logger.warning(
                "Skipping change with invalid sync_id %r in %s",
                change.sync_id, change.table,
            )
            return
        stamp = change.timestamp.isoformat()

        if change.operation is Operation.INSERT:
            if sync_id in rows:
                logger.warning(
                    "Skipping duplicate insert of %s:%s by %s",
                    change.table, sync_id, change.author,
                )
                return
            row = table.empty_row(sync_id)
            row[MODIFIED_AT_FIELD] = stamp
            row[MODIFIED_BY_FIELD] = change.author
            rows[sync_id] = row
            return

        if change.operation is Operation.DELETE:
            if rows.pop(sync_id, None) is None:
                logger.debug("Delete of absent row %s:%s ignored", change.table, sync_id)
            return

        row = rows.get(sync_id)
        if row is None:
            logger.warning(
                "Skipping update of absent row %s:%s", change.table, sync_id,
            )
            return
        if change.field is None or not table.has_field(change.field):
            logger.warning(
                "Skipping update of unknown field %s.%s", change.table, change.field,
            )
            return
        try:
            row[change.field] = coerce_value(change.new_value, table.columns[change.field])
        except (TypeError, ValueError):
            logger.warning(
                "Skipping update %s.%s: %r does not fit the field type",
                change.table, change.field, change.new_value,
            )
            return
        row[MODIFIED_AT_FIELD] = stamp
        row[MODIFIED_BY_FIELD] = change.author

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def row_hashes(self, table: str) -> list[str]:
        """Content hash of every row in *table* (bookkeeping included)."""
        return [row_hash(r) for r in self.ordered_rows(table)]

    def content_hash(self) -> str:
        """Deterministic digest of the whole dataset."""
        parts = []
        for name in self.schema.table_names():
            parts.append(name + ":" + ",".join(self.row_hashes(name)))
        return Hasher.hash_string("\n".join(parts))

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        """Serialise to the bytes of a SQLite database file."""
        conn = sqlite3.connect(":memory:")
        try:
            for table in self.schema.tables:
                conn.execute(_create_table_sql(table))
                columns = table.column_names()
                placeholders = ", ".join("?" for _ in columns)
                conn.executemany(
                    f"INSERT INTO {_quote(table.name)} VALUES ({placeholders})",
                    [
                        tuple(_to_sql(row.get(c)) for c in columns)
                        for row in self.ordered_rows(table.name)
                    ],
                )
            conn.commit()
            return conn.serialize()
        finally:
            conn.close()

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        schema: DatabaseSchema,
        name: str = "<snapshot>",
    ) -> Snapshot:
        """Load a snapshot from SQLite database bytes.

        Tables declared in *schema* but absent from the file load empty.

        Raises
        ------
        CorruptChangeFile
            If *data* is not a readable database or a row breaks the schema.
        """
        snapshot = cls(schema)
        if not data:
            return snapshot

        conn = sqlite3.connect(":memory:")
        try:
            conn.deserialize(data)
            conn.row_factory = sqlite3.Row
            present = {
                r[0] for r in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                )
            }
            for table in schema.tables:
                if table.name not in present:
                    continue
                for raw in conn.execute(f"SELECT * FROM {_quote(table.name)}"):
                    snapshot.put(table.name, dict(raw))
        except (sqlite3.DatabaseError, SchemaError) as exc:
            raise CorruptChangeFile(name, str(exc)) from exc
        finally:
            conn.close()
        return snapshot


def row_hash(row: Row) -> str:
    """SHA-256 of a row's canonical JSON form."""
    return Hasher.hash_string(json.dumps(row, sort_keys=True, default=str))


def _create_table_sql(table: TableSchema) -> str:
    cols = [f"{SYNC_ID_FIELD} {table.id_type.sql_type} PRIMARY KEY"]
    cols.extend(f"{_quote(n)} {t.sql_type}" for n, t in table.columns.items())
    cols.append(f"{MODIFIED_AT_FIELD} TEXT")
    cols.append(f"{MODIFIED_BY_FIELD} TEXT")
    return f"CREATE TABLE {_quote(table.name)} ({', '.join(cols)})"


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _to_sql(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value
