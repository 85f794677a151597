"""Row-level three-way merge, conflict detection, and resolution.

Each row is compared against the common ancestor (the base) on both sides.
Non-overlapping changes merge automatically, field by field.  Overlapping
changes that disagree become :class:`MergeConflict` records which the
caller resolves with :class:`ConflictResolution` choices.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from foldersync.config import MODIFIED_AT_FIELD, MODIFIED_BY_FIELD, SYNC_ID_FIELD
from foldersync.errors import InvalidResolution, UnresolvedConflict
from foldersync.models.merge import (
    Choice,
    ConflictKind,
    ConflictResolution,
    MergeConflict,
)
from foldersync.models.schema import (
    FieldType,
    Row,
    SyncId,
    TableSchema,
    content_fields,
    differing_fields,
    same_content,
    same_value,
    sync_id_key,
)
from foldersync.sync.snapshot import Snapshot

logger = logging.getLogger(__name__)

IdFactory = Callable[[TableSchema, set], SyncId]


@dataclass
class MergeResult:
    """Outcome of a three-way merge.

    ``merged`` holds every auto-merged row; rows under conflict keep their
    base state until :func:`resolve` applies a choice.  ``known_ids`` lists
    every identifier seen on any side so minted identifiers never reuse one.
    """

    merged: Snapshot
    conflicts: list[MergeConflict] = field(default_factory=list)
    known_ids: dict[str, set] = field(default_factory=dict)
    label_a: str = "A"
    label_b: str = "B"

    @property
    def is_clean(self) -> bool:
        return not self.conflicts

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0


def merge(
    base: Snapshot,
    a: Snapshot,
    b: Snapshot,
    *,
    label_a: str = "A",
    label_b: str = "B",
) -> MergeResult:
    """Three-way merge of snapshots *a* and *b* against their ancestor *base*.

    For each table (in schema order) and each ``sync_id`` present anywhere:

    - unchanged on both sides: kept as in base
    - changed on one side only: that side's result (insert, update, delete)
    - changed on both sides to the same content: applied once
    - both updated, different fields: merged field by field
    - both updated the same field differently: conflict
    - one deleted, the other updated: conflict
    - both inserted different rows under the same ``sync_id``: conflict

    Pure and deterministic for fixed inputs.
    """
    merged = base.copy()
    conflicts: list[MergeConflict] = []
    known_ids: dict[str, set] = {}

    for table in base.schema.tables:
        name = table.name
        base_rows, a_rows, b_rows = base.rows(name), a.rows(name), b.rows(name)
        all_ids = set(base_rows) | set(a_rows) | set(b_rows)
        known_ids[name] = set(all_ids)

        for sync_id in sorted(all_ids, key=sync_id_key):
            row_base = base_rows.get(sync_id)
            row_a = a_rows.get(sync_id)
            row_b = b_rows.get(sync_id)

            outcome, conflict = merge_rows(
                name, sync_id, row_base, row_a, row_b,
                label_a=label_a, label_b=label_b,
            )
            if conflict is not None:
                conflicts.append(conflict)
                continue
            if outcome is None:
                merged.remove(name, sync_id)
            else:
                merged.put(name, outcome)

    if conflicts:
        logger.info(
            "Merge of %s and %s: %d conflict(s)", label_a, label_b, len(conflicts),
        )
    return MergeResult(
        merged=merged,
        conflicts=conflicts,
        known_ids=known_ids,
        label_a=label_a,
        label_b=label_b,
    )


def compute_conflicts(base: Snapshot, a: Snapshot, b: Snapshot) -> list[MergeConflict]:
    """Conflicts between *a* and *b* relative to *base*, grouped by table
    in declaration order, then by ascending ``sync_id``."""
    return merge(base, a, b).conflicts


def merge_rows(
    table: str,
    sync_id: SyncId,
    row_base: Row | None,
    row_a: Row | None,
    row_b: Row | None,
    *,
    label_a: str = "A",
    label_b: str = "B",
) -> tuple[Row | None, MergeConflict | None]:
    """Merge one row.  Returns ``(result_row, None)`` or ``(None, conflict)``.

    A ``None`` row means the row is absent (never inserted or deleted).
    """
    a_changed = not same_content(row_a, row_base)
    b_changed = not same_content(row_b, row_base)

    if not a_changed and not b_changed:
        return row_base, None
    if a_changed and not b_changed:
        return row_a, None
    if b_changed and not a_changed:
        return row_b, None

    # Both sides changed
    if same_content(row_a, row_b):
        return _later(row_a, row_b), None

    def _conflict(kind: ConflictKind, fields: list[str], description: str) -> MergeConflict:
        return MergeConflict(
            table=table,
            sync_id=sync_id,
            kind=kind,
            row_a=row_a,
            row_b=row_b,
            row_base=row_base,
            modified_by_a=_modified_by(row_a, label_a),
            modified_by_b=_modified_by(row_b, label_b),
            differing_fields=fields,
            description=description,
        )

    if row_a is None or row_b is None:
        deleter, editor = (label_a, label_b) if row_a is None else (label_b, label_a)
        return None, _conflict(
            ConflictKind.DELETE_UPDATE,
            [],
            f"Deleted by {deleter}, edited by {editor}",
        )

    diff = differing_fields(row_a, row_b)
    if row_base is None:
        return None, _conflict(
            ConflictKind.INSERT_INSERT,
            diff,
            f"Both created {table} {sync_id} with different values: {', '.join(diff)}",
        )

    merged_row, clashes = _merge_fields(row_base, row_a, row_b)
    if not clashes:
        return merged_row, None
    return None, _conflict(
        ConflictKind.UPDATE_UPDATE,
        diff,
        f"Both edited: {', '.join(diff)}",
    )


def _merge_fields(
    row_base: Row,
    row_a: Row,
    row_b: Row,
    prefer: Choice | None = None,
) -> tuple[Row, list[str]]:
    """Field-level merge of two updated rows.

    Returns the merged row and the fields both sides changed differently.
    With *prefer* set to A or B, clashing fields take that side's value.
    """
    merged: Row = dict(row_base)
    clashes: list[str] = []
    a_touched = b_touched = False

    for key in content_fields({**row_base, **row_a, **row_b}):
        v0, va, vb = row_base.get(key), row_a.get(key), row_b.get(key)
        a_diff = not same_value(va, v0)
        b_diff = not same_value(vb, v0)
        if a_diff and b_diff and not same_value(va, vb):
            clashes.append(key)
            if prefer is Choice.A:
                merged[key] = va
                a_touched = True
            elif prefer is Choice.B:
                merged[key] = vb
                b_touched = True
        elif a_diff:
            merged[key] = va
            a_touched = True
        elif b_diff:
            merged[key] = vb
            b_touched = True

    if a_touched and b_touched:
        source = _later(row_a, row_b)
    elif b_touched:
        source = row_b
    else:
        source = row_a
    merged[MODIFIED_AT_FIELD] = source.get(MODIFIED_AT_FIELD)
    merged[MODIFIED_BY_FIELD] = source.get(MODIFIED_BY_FIELD)
    return merged, clashes


def _later(row_a: Row | None, row_b: Row | None) -> Row | None:
    """The row with the later ``modified_at``; A on ties."""
    if row_a is None or row_b is None:
        return row_a if row_b is None else row_b
    stamp_a = row_a.get(MODIFIED_AT_FIELD) or ""
    stamp_b = row_b.get(MODIFIED_AT_FIELD) or ""
    return row_b if stamp_b > stamp_a else row_a


def _modified_by(row: Row | None, fallback: str) -> str:
    if row is not None and row.get(MODIFIED_BY_FIELD):
        return str(row[MODIFIED_BY_FIELD])
    return fallback


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------


def resolve(
    conflicts: list[MergeConflict],
    resolutions: list[ConflictResolution],
    partial: MergeResult,
    *,
    id_factory: IdFactory | None = None,
) -> Snapshot:
    """Apply one resolution per conflict to the auto-merged result.

    Non-conflicting rows are left untouched.  Resolutions for rows that are
    not in conflict are ignored.

    Raises
    ------
    UnresolvedConflict
        If any conflict lacks a matching resolution.
    InvalidResolution
        If ``both`` is chosen for anything but an insert/insert collision.
    """
    by_key = {_key(r.table, r.sync_id): r for r in resolutions}
    missing = [
        (c.table, c.sync_id) for c in conflicts if _key(c.table, c.sync_id) not in by_key
    ]
    if missing:
        raise UnresolvedConflict(missing)

    mint = id_factory or default_id_factory
    known = {t: set(ids) for t, ids in partial.known_ids.items()}
    result = partial.merged.copy()

    for conflict in conflicts:
        choice = Choice(by_key[_key(conflict.table, conflict.sync_id)].choice)
        rows = _resolved_rows(conflict, choice)
        result.remove(conflict.table, conflict.sync_id)

        for i, row in enumerate(rows):
            if i > 0:
                table = result.schema.table(conflict.table)
                ids = known.setdefault(conflict.table, set()) | result.sync_ids(conflict.table)
                new_id = mint(table, ids)
                known[conflict.table].add(new_id)
                row = {**row, SYNC_ID_FIELD: new_id}
                logger.info(
                    "Kept both rows for %s:%s; B's copy is now %s",
                    conflict.table, conflict.sync_id, new_id,
                )
            result.put(conflict.table, row)

    return result


def resolve_all(conflicts: list[MergeConflict], choice: Choice | str) -> list[ConflictResolution]:
    """Bulk shortcut: the same *choice* for every conflict."""
    choice = Choice(choice)
    return [
        ConflictResolution(table=c.table, sync_id=c.sync_id, choice=choice)
        for c in conflicts
    ]


def _resolved_rows(conflict: MergeConflict, choice: Choice) -> list[Row]:
    """Rows that replace the conflicted ``sync_id`` under *choice*."""
    if choice is Choice.BOTH and conflict.kind is not ConflictKind.INSERT_INSERT:
        raise InvalidResolution(
            f"'both' is only valid for insert/insert collisions, not "
            f"{conflict.kind.value} on {conflict.table}:{conflict.sync_id}."
        )

    if conflict.kind is ConflictKind.DELETE_UPDATE:
        if choice is Choice.BASE:
            return []
        edited = conflict.row_a if conflict.row_a is not None else conflict.row_b
        return [edited] if edited is not None else []

    if conflict.kind is ConflictKind.INSERT_INSERT:
        if choice is Choice.BASE:
            return []
        if choice is Choice.A:
            return [conflict.row_a] if conflict.row_a is not None else []
        if choice is Choice.B:
            return [conflict.row_b] if conflict.row_b is not None else []
        return [r for r in (conflict.row_a, conflict.row_b) if r is not None]

    # update/update
    if choice is Choice.BASE:
        return [conflict.row_base] if conflict.row_base is not None else []
    if conflict.row_base is None or conflict.row_a is None or conflict.row_b is None:
        chosen = conflict.row_a if choice is Choice.A else conflict.row_b
        return [chosen] if chosen is not None else []
    merged, _ = _merge_fields(conflict.row_base, conflict.row_a, conflict.row_b, prefer=choice)
    return [merged]


def default_id_factory(table: TableSchema, known: set) -> SyncId:
    """Next integer above every known id, or a random hex id for text tables."""
    if table.id_type is FieldType.INTEGER:
        numeric = [i for i in known if isinstance(i, int) and not isinstance(i, bool)]
        return max(numeric, default=0) + 1
    while True:
        candidate = uuid.uuid4().hex
        if candidate not in known:
            return candidate


def _key(table: str, sync_id: Any) -> tuple[str, tuple]:
    return (table, sync_id_key(sync_id))
