"""Append-only change log stored on the Changes tab.

Rows are ``ts, alumniId, email, field, before, after`` with an optional
``isUndone`` column.  Rows are never edited except to flag them undone.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from alumnistore import schema
from alumnistore.sheets_client import a1_range, cell_range, column_letter, table_range
from alumnistore.table import NOT_FOUND, cell_text, load_table, normalize_id, tri_state

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Return the current UTC time as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""

    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass
class ChangeLogEntry:
    ts: str
    record_id: str
    actor: str
    field: str
    before: str
    after: str
    is_undone: bool = False
    row_number: int = 0

    @property
    def is_noop(self) -> bool:
        return self.before == self.after

    def as_row(self, *, include_undo: bool = False) -> List[str]:
        row = [self.ts, self.record_id, self.actor, self.field, self.before, self.after]
        if include_undo:
            row.append("true" if self.is_undone else "")
        return row


@dataclass
class ChangeLog:
    """The parsed Changes tab; ``undone_column`` is -1 if the tab has none."""

    title: str
    entries: List[ChangeLogEntry] = field(default_factory=list)
    undone_column: int = NOT_FOUND

    def newest_first(self) -> List[ChangeLogEntry]:
        return list(reversed(self.entries))


async def read_change_log(gateway, tab: str) -> ChangeLog:
    """Return every entry on ``tab`` in sheet order."""

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    if not table.header:
        return ChangeLog(title=tab)

    id_index = table.require_column(schema.RECORD_ID_ALIASES)
    field_index = table.require_column(schema.CHANGE_FIELD_ALIASES)
    ts_index = table.index(schema.CHANGE_TS_ALIASES)
    actor_index = table.index(schema.CHANGE_ACTOR_ALIASES)
    before_index = table.index(schema.CHANGE_BEFORE_ALIASES)
    after_index = table.index(schema.CHANGE_AFTER_ALIASES)
    undone_index = table.index(schema.CHANGE_UNDONE_ALIASES)

    def cell(row: Sequence[Any], index: int) -> str:
        if index == NOT_FOUND or index >= len(row):
            return ""
        return cell_text(row[index]).strip()

    entries: List[ChangeLogEntry] = []
    for position, row in enumerate(table.rows):
        record_id = normalize_id(row[id_index]) if id_index < len(row) else ""
        if not record_id:
            continue
        entries.append(
            ChangeLogEntry(
                ts=cell(row, ts_index),
                record_id=record_id,
                actor=cell(row, actor_index),
                field=cell(row, field_index),
                before=cell(row, before_index),
                after=cell(row, after_index),
                is_undone=tri_state(cell(row, undone_index)) is True,
                row_number=table.row_number(position),
            )
        )
    return ChangeLog(title=tab, entries=entries, undone_column=undone_index)


async def append_changes(gateway, tab: str, entries: Sequence[ChangeLogEntry], *, label: str = "") -> int:
    """Append ``entries`` in a single call; returns the number of rows written.

    Entries whose before and after values are equal are dropped.
    """

    pending = [entry for entry in entries if not entry.is_noop]
    if not pending:
        return 0
    include_undo = any(entry.is_undone for entry in pending)
    rows = [entry.as_row(include_undo=include_undo) for entry in pending]
    await gateway.append(table_range(tab), rows, label=label or f"Sheets append {tab}")
    logger.info("Appended %d change row(s) to %s", len(rows), tab)
    return len(rows)


async def ensure_changes_header(gateway, tab: str, *, with_undo: bool = True, dry_run: bool = False) -> bool:
    """Make sure row 1 of ``tab`` holds the change-log header.

    Returns ``True`` when the header had to be (re)written.  An existing
    header that already starts with the expected names is left alone.
    """

    expected = schema.CHANGES_HEADER_WITH_UNDO if with_undo else schema.CHANGES_HEADER
    last = column_letter(len(expected))
    header_range = a1_range(tab, f"A1:{last}1")
    values = await gateway.get(header_range, label=f"Sheets get {tab} header")
    current = [cell_text(value).strip().lower() for value in (values[0] if values else [])]
    wanted = [name.lower() for name in expected]
    if current[: len(wanted)] == wanted:
        return False
    if dry_run:
        logger.info("Changes header on %s needs rewriting (dry run)", tab)
        return True
    await gateway.update(header_range, [list(expected)], label=f"Sheets update {tab} header")
    logger.info("Rewrote changes header on %s", tab)
    return True


async def mark_undone(gateway, log: ChangeLog, entry: ChangeLogEntry) -> bool:
    """Flag ``entry`` as undone in place; ``False`` if the tab has no flag column."""

    if log.undone_column == NOT_FOUND or entry.row_number <= 1:
        return False
    target = cell_range(log.title, entry.row_number, log.undone_column)
    await gateway.update(target, [["true"]], label=f"Sheets update {log.title} isUndone")
    entry.is_undone = True
    return True


def find_entry(
    log: ChangeLog,
    record_id: str,
    *,
    ts: str = "",
    field_name: str = "",
) -> Optional[ChangeLogEntry]:
    """Return the not-undone entry for ``record_id`` with ``ts``, else the newest."""

    wanted = normalize_id(record_id)
    candidates = [
        entry
        for entry in log.entries
        if entry.record_id == wanted
        and not entry.is_undone
        and (not field_name or entry.field.lower() == field_name.lower())
    ]
    if not candidates:
        return None
    if ts:
        for entry in reversed(candidates):
            if entry.ts == ts:
                return entry
    return max(candidates, key=lambda entry: (entry.ts, entry.row_number))


__all__ = [
    "ChangeLog",
    "ChangeLogEntry",
    "append_changes",
    "ensure_changes_header",
    "find_entry",
    "mark_undone",
    "read_change_log",
    "utc_now_iso",
]
