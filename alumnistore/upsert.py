"""Read / merge / write / verify / audit for a single record row.

The sequence for :func:`upsert_fields` is:

1. read the tab (header plus rows) in one call;
2. find the row by normalised record id, or synthesise a blank one after the
   last row;
3. merge the caller's fields with the rule *never overwrite a non-empty cell
   with an empty value, otherwise write if different*, comparing boolean-like
   values by tri-state;
4. write the merged, header-aligned row to its exact range;
5. read the same range back and raise :class:`VerificationError` if any
   written cell did not persist;
6. append one change-log row per changed field in a single call.

A call that changes nothing performs the initial read and nothing else.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from alumnistore import audit_log, schema
from alumnistore.changelog import ChangeLogEntry, append_changes, utc_now_iso
from alumnistore.errors import RecordNotFoundError, SchemaError, VerificationError
from alumnistore.settings import DEFAULT_CHANGES_TAB
from alumnistore.table import (
    NOT_FOUND,
    cell_text,
    index_header,
    load_table,
    normalize_id,
    pad_row,
    tri_state,
)

logger = logging.getLogger(__name__)


def _is_boolean(name: str, *values: Any) -> bool:
    return schema.is_boolean_field(name) or any(isinstance(value, bool) for value in values)


def should_update_cell(current: Any, proposed: Any, *, boolean: bool = False) -> bool:
    """Return ``True`` when ``proposed`` should replace ``current``.

    An empty proposal never blanks a populated cell.  Boolean-like values
    are compared by tri-state so ``"TRUE"``, ``True`` and ``"yes"`` are equal.
    """

    after = cell_text(proposed).strip()
    before = cell_text(current).strip()
    if not after:
        return False
    if boolean:
        before_state, after_state = tri_state(current), tri_state(proposed)
        if before_state is not None or after_state is not None:
            return before_state != after_state
    return before != after


def values_match(expected: Any, actual: Any, *, boolean: bool = False) -> bool:
    if boolean:
        expected_state, actual_state = tri_state(expected), tri_state(actual)
        if expected_state is not None or actual_state is not None:
            return expected_state == actual_state
    return cell_text(expected).strip() == cell_text(actual).strip()


@dataclass
class FieldChange:
    column: int
    field: str
    before: str
    after: str


def merge_fields(
    header: Sequence[Any],
    row: Sequence[Any],
    updates: Mapping[str, Any],
    *,
    id_index: int = NOT_FOUND,
) -> Tuple[List[Any], List[FieldChange], List[str]]:
    """Apply ``updates`` to a copy of ``row``.

    Returns the merged row, the changes actually made and the names of the
    fields skipped because the header has no such column (or they target the
    id column).
    """

    merged = pad_row(row, len(header))
    changes: List[FieldChange] = []
    skipped: List[str] = []
    touched: Dict[int, FieldChange] = {}
    for name, proposed in updates.items():
        column = index_header(header, [name])
        if column == NOT_FOUND or column == id_index:
            skipped.append(name)
            continue
        current = merged[column]
        if not should_update_cell(current, proposed, boolean=_is_boolean(name, current, proposed)):
            continue
        title = cell_text(header[column]).strip()
        before = touched[column].before if column in touched else cell_text(current)
        after = cell_text(proposed).strip()
        merged[column] = after
        touched[column] = FieldChange(column=column, field=title, before=before, after=after)
    for change in touched.values():
        if change.before != change.after:
            changes.append(change)
    return merged, changes, skipped


@dataclass
class UpsertResult:
    record_id: str
    row_number: int
    created: bool = False
    changed_fields: List[str] = field(default_factory=list)
    skipped_fields: List[str] = field(default_factory=list)
    changes: List[ChangeLogEntry] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


async def upsert_fields(
    gateway,
    record_id: str,
    tab: str,
    field_updates: Mapping[str, Any],
    actor: str = "",
    *,
    changes_tab: Optional[str] = DEFAULT_CHANGES_TAB,
    touch_fields: Optional[Mapping[str, Any]] = None,
    create_fields: Optional[Mapping[str, Any]] = None,
    require_existing: bool = False,
    header_row: int = 1,
    clock: Callable[[], str] = utc_now_iso,
) -> UpsertResult:
    """Merge ``field_updates`` into the row of ``record_id`` on ``tab``.

    ``touch_fields`` (for example ``updatedAt`` or ``status``) are written
    and verified only when at least one caller field changed; they are not
    audited.  ``create_fields`` (for example ``slug``) seed a row that does
    not exist yet and are logged like caller fields; ``field_updates`` win
    over them.  ``changes_tab=None`` disables the change-log append.
    """

    rid = normalize_id(record_id)
    if not rid:
        raise ValueError("record_id must not be empty")

    table = await load_table(gateway, tab, header_row, label=f"Sheets get {tab}")
    if not table.header:
        raise SchemaError(f"{tab} has no header row")
    id_index = table.require_column(schema.RECORD_ID_ALIASES)

    position = table.find_position(id_index, rid)
    created = position is None
    if created:
        if require_existing:
            raise RecordNotFoundError(f"No row for {rid!r} on {tab}")
        current_row: List[Any] = [""] * len(table.header)
        current_row[id_index] = rid
        row_number = table.row_number(len(table.rows))
    else:
        current_row = table.padded(position)
        row_number = table.row_number(position)

    updates: Dict[str, Any] = dict(create_fields or {}) if created else {}
    updates.update(field_updates)
    merged, changes, skipped = merge_fields(table.header, current_row, updates, id_index=id_index)
    result = UpsertResult(record_id=rid, row_number=row_number, created=created, skipped_fields=skipped)
    if skipped:
        logger.debug("Skipping fields not on %s: %s", tab, ", ".join(skipped))
    if not changes:
        logger.debug("No changes for %s on %s", rid, tab)
        return result

    written: Dict[int, Tuple[str, Any]] = {change.column: (change.field, change.after) for change in changes}
    for name, value in (touch_fields or {}).items():
        column = index_header(table.header, [name])
        if column == NOT_FOUND or column == id_index or column in written:
            continue
        merged[column] = cell_text(value)
        written[column] = (cell_text(table.header[column]).strip(), merged[column])
    if created:
        written[id_index] = (cell_text(table.header[id_index]).strip(), rid)

    target = table.row_range(row_number)
    await gateway.update(target, [merged], label=f"Sheets update {tab} row {row_number}")
    await verify_range(gateway, target, rid, written, len(table.header))

    ts = clock()
    entries = [ChangeLogEntry(ts, rid, actor, change.field, change.before, change.after) for change in changes]
    if changes_tab:
        await append_changes(gateway, changes_tab, entries, label=f"Sheets append {changes_tab}")

    result.changed_fields = [change.field for change in changes]
    result.changes = entries
    audit_log.record(
        rid,
        {change.field: (change.before, change.after) for change in changes},
        actor=actor,
        tab=tab,
        target_range=target,
        row_number=row_number,
        created=created,
    )
    logger.info("Updated %d field(s) for %s on %s row %d", len(changes), rid, tab, row_number)
    return result


async def verify_range(gateway, target: str, rid: str, written: Mapping[int, Tuple[str, Any]], width: int) -> None:
    """Re-read ``target`` and raise :class:`VerificationError` on the first mismatch.

    ``written`` maps 0-based column offsets within the range to ``(field, value)``.
    """

    values = await gateway.get(target, label=f"Sheets verify {target}")
    persisted = pad_row(values[0] if values else [], width)
    for column, (name, expected) in sorted(written.items()):
        actual = persisted[column]
        if values_match(expected, actual, boolean=_is_boolean(name, expected, actual)):
            continue
        expected_text, actual_text = cell_text(expected), cell_text(actual)
        audit_log.record(
            rid, {name: (expected_text, actual_text)}, event=audit_log.VERIFICATION_FAILED, target_range=target
        )
        logger.error("Write verification failed for %s: %s expected %r got %r", target, name, expected_text, actual_text)
        raise VerificationError(target, name, expected_text, actual_text)


__all__ = [
    "FieldChange",
    "UpsertResult",
    "merge_fields",
    "should_update_cell",
    "upsert_fields",
    "values_match",
    "verify_range",
]
