"""Whole-database comparison and table-level keep-A/keep-B merge.

Used when two full snapshots are compared directly rather than through
change sets: each table is summarised by row count and a multiset of row
content hashes.
"""

from __future__ import annotations

import logging
from collections import Counter

from foldersync.models.merge import Choice, TableDiff
from foldersync.sync.snapshot import Snapshot

logger = logging.getLogger(__name__)


def compare_snapshots(
    a: Snapshot,
    b: Snapshot,
    *,
    label_a: str = "A",
    label_b: str = "B",
) -> list[TableDiff]:
    """Compare every declared table of *a* and *b*.

    - equal counts, equal hash multisets: no difference
    - equal counts, different hashes: content difference, reported as
      "N row(s) only in A, M row(s) only in B"
    - different counts: count difference with the signed delta
    """
    diffs: list[TableDiff] = []
    for table in a.schema.tables:
        count_a, count_b = a.count(table.name), b.count(table.name)
        diff = TableDiff(
            table=table.name,
            label=table.label or table.name,
            count_a=count_a,
            count_b=count_b,
            delta=count_b - count_a,
        )

        if count_a != count_b:
            diff.difference_type = "count"
            if diff.delta > 0:
                diff.details = f"{label_b} has {diff.delta} more row(s) ({diff.delta:+d})"
            else:
                diff.details = f"{label_a} has {-diff.delta} more row(s) ({diff.delta:+d})"
        elif count_a > 0:
            hashes_a = Counter(a.row_hashes(table.name))
            hashes_b = Counter(b.row_hashes(table.name))
            only_a = sum((hashes_a - hashes_b).values())
            only_b = sum((hashes_b - hashes_a).values())
            if only_a or only_b:
                diff.difference_type = "content"
                diff.details = (
                    f"{only_a} row(s) only in {label_a}, {only_b} row(s) only in {label_b}"
                )

        diffs.append(diff)

    changed = sum(1 for d in diffs if d.has_differences)
    logger.debug("Compared %d table(s), %d with differences", len(diffs), changed)
    return diffs


def take_tables(
    a: Snapshot,
    b: Snapshot,
    choices: dict[str, Choice | str],
) -> Snapshot:
    """Build a dataset whose tables come wholesale from *a* or *b*.

    *choices* maps table name to ``"a"`` or ``"b"``; unlisted tables are
    taken from *a*.

    Raises
    ------
    ValueError
        If a table is not declared or a choice is not ``"a"`` or ``"b"``.
    """
    result = a.copy()
    for name, choice in choices.items():
        if name not in a.schema:
            raise ValueError(f"Unknown table '{name}'.")
        choice = Choice(choice)
        if choice not in (Choice.A, Choice.B):
            raise ValueError(f"Table choice must be 'a' or 'b', not '{choice.value}'.")
        if choice is Choice.B:
            rows = result.rows(name)
            rows.clear()
            for row in b.ordered_rows(name):
                result.put(name, row)
    return result
