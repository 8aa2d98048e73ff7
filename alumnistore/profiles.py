"""Profile saves and undo, built on the safe upsert protocol."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from alumnistore import audit_log, schema
from alumnistore.changelog import (
    ChangeLogEntry,
    append_changes,
    find_entry,
    mark_undone,
    read_change_log,
    utc_now_iso,
)
from alumnistore.errors import DuplicateEmailError, ForbiddenError, RecordNotFoundError, SchemaError, StoreError
from alumnistore.ownership import ensure_alias, is_admin, normalize_email, owned_by, resolve_owner_record_id
from alumnistore.settings import StoreSettings
from alumnistore.sheets_client import a1_range, cell_range, column_letter, table_range
from alumnistore.table import (
    NOT_FOUND,
    SheetTable,
    align_row_to_header,
    cell_text,
    index_header,
    load_table,
    normalize_id,
)
from alumnistore.upsert import UpsertResult, upsert_fields, verify_range

logger = logging.getLogger(__name__)

EMAIL_ALIASES = ("email",)
UPDATE_TEXT_FIELD = "currentUpdateText"
UPDATE_MAX_CHARS = 280


def filter_changes(changes: Mapping[str, Any], *, admin: bool) -> Dict[str, Any]:
    """Canonicalise keys and drop fields the caller may not set."""

    accepted: Dict[str, Any] = {}
    for key, value in changes.items():
        name = schema.canonical_field(key)
        lowered = name.lower()
        if not name or lowered in schema.STABLE_ID_FIELDS or lowered in schema.SERVER_CONTROLLED_FIELDS:
            continue
        if not admin and lowered in schema.ADMIN_ONLY_FIELDS:
            continue
        accepted[name] = value
    return accepted


def _check_duplicate_email(table: SheetTable, email_index: int, id_index: int, owner: str, email: str) -> None:
    owners = set()
    for row in table.rows:
        if email_index < len(row) and normalize_email(row[email_index]) == email:
            record_id = normalize_id(row[id_index]) if id_index < len(row) else ""
            if record_id:
                owners.add(record_id)
    if owners and owners != {owner}:
        raise DuplicateEmailError(email, sorted(owners))


def _requested_slug(changes: Mapping[str, Any]) -> str:
    for key, value in changes.items():
        if schema.canonical_field(key).lower() == "slug":
            return normalize_id(value)
    return ""


async def forward_slug(
    gateway,
    tab: str,
    from_slug: str,
    to_slug: str,
    *,
    clock: Callable[[], str] = utc_now_iso,
) -> bool:
    """Record that ``from_slug`` now points at ``to_slug``; ``True`` if a row was added."""

    old, new = normalize_id(from_slug), normalize_id(to_slug)
    if not old or not new or old == new:
        return False

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    header = list(table.header)
    if not header:
        header = list(schema.SLUGS_HEADER)
        await gateway.update(
            a1_range(tab, f"A1:{column_letter(len(header))}1"),
            [header],
            label=f"Sheets update {tab} header",
        )
    from_index = index_header(header, ("fromSlug",))
    to_index = index_header(header, ("toSlug",))
    if from_index == NOT_FOUND or to_index == NOT_FOUND:
        raise SchemaError(f"{tab} must have fromSlug and toSlug columns")

    for row in table.rows:
        if (
            max(from_index, to_index) < len(row)
            and normalize_id(row[from_index]) == old
            and normalize_id(row[to_index]) == new
        ):
            return False

    values = {"fromSlug": old, "toSlug": new, "createdAt": clock()}
    await gateway.append(table_range(tab), [align_row_to_header(header, values)], label=f"Sheets append {tab}")
    logger.info("Forwarded slug %s to %s", old, new)
    return True


async def save_profile(
    gateway,
    settings: StoreSettings,
    identity: str,
    record_id: str,
    changes: Mapping[str, Any],
    *,
    clock: Callable[[], str] = utc_now_iso,
) -> UpsertResult:
    """Apply a profile edit from ``identity`` to ``record_id``.

    Non-admins must own the record and cannot create rows.  The saved row is
    marked ``needs_review``.  A blank Live email is backfilled with the
    submitter's address unless another record already uses it.

    Admins may set ``slug``.  A created row always gets a slug (the
    requested one, else the record id) and renaming an existing slug adds a
    forward row on the slugs tab.
    """

    rid = normalize_id(record_id)
    if not rid:
        raise ValueError("record_id is required")
    admin = is_admin(identity, settings.admin_emails)
    if not admin:
        owner = await resolve_owner_record_id(gateway, identity, settings)
        if not owned_by(owner, rid):
            raise ForbiddenError(f"{identity or 'anonymous'} may not modify {rid}")

    updates = filter_changes(changes, admin=admin)
    create_fields: Dict[str, Any] = {}
    forward_from = ""
    new_slug = _requested_slug(changes) if admin else ""
    if admin:
        create_fields["slug"] = new_slug or rid
    if new_slug:
        live = await load_table(gateway, settings.live_tab, label=f"Sheets get {settings.live_tab}")
        slug_index = index_header(live.header, schema.SLUG_ALIASES)
        position = live.find_position(index_header(live.header, schema.RECORD_ID_ALIASES), rid)
        if slug_index != NOT_FOUND and position is not None:
            existing = normalize_id(live.padded(position)[slug_index])
            if existing != new_slug:
                updates["slug"] = new_slug
                forward_from = existing or rid

    submitter = normalize_email(identity)
    if submitter and not admin:
        live = await load_table(gateway, settings.live_tab, label=f"Sheets get {settings.live_tab}")
        email_index = index_header(live.header, EMAIL_ALIASES)
        id_index = index_header(live.header, schema.RECORD_ID_ALIASES)
        position = live.find_position(id_index, rid)
        if email_index != NOT_FOUND and id_index != NOT_FOUND and position is not None:
            current_email = cell_text(live.padded(position)[email_index]).strip()
            if not current_email and not any(key.lower() == "email" for key in updates):
                _check_duplicate_email(live, email_index, id_index, rid, submitter)
                updates[cell_text(live.header[email_index]).strip()] = submitter

    touch: Dict[str, Any] = {"updatedAt": clock()}
    if "status" not in {key.lower() for key in updates}:
        touch["status"] = "needs_review"

    result = await upsert_fields(
        gateway,
        rid,
        settings.live_tab,
        updates,
        identity,
        changes_tab=settings.changes_tab,
        touch_fields=touch,
        create_fields=create_fields,
        require_existing=not admin,
        clock=clock,
    )

    if forward_from and any(name.lower() == "slug" for name in result.changed_fields):
        await forward_slug(gateway, settings.slugs_tab, forward_from, new_slug, clock=clock)

    if result.changed and submitter and not admin:
        try:
            await ensure_alias(gateway, submitter, rid, settings.aliases_tab)
        except StoreError as exc:
            logger.warning("Could not link %s to %s: %s", submitter, rid, exc)
    return result


def clean_update_text(text: Any) -> str:
    """Normalise newlines, clamp to ``UPDATE_MAX_CHARS`` and trim."""

    raw = str(text or "").replace("\r\n", "\n")
    return raw[:UPDATE_MAX_CHARS].strip()


@dataclass
class UpdatePost:
    id: str
    ts: str
    text: str
    deduped: bool


async def post_update(
    gateway,
    settings: StoreSettings,
    record_id: str,
    text: Any,
    actor: str = "",
    *,
    clock: Callable[[], str] = utc_now_iso,
) -> UpdatePost:
    """Set the community update line of an existing record.

    Posting the text the record already shows writes nothing and returns
    ``deduped=True``.  Otherwise the Live cell is written and verified and a
    change entry is logged; the returned ``id`` is ``{record_id}::{ts}``
    where ``ts`` is the timestamp of that entry, so it can be passed to
    :func:`undo_change`.
    """

    rid = normalize_id(record_id)
    if not rid:
        raise ValueError("record_id is required")
    cleaned = clean_update_text(text)
    if not cleaned:
        raise ValueError("Empty update")

    ts = clock()
    result = await upsert_fields(
        gateway,
        rid,
        settings.live_tab,
        {UPDATE_TEXT_FIELD: cleaned},
        actor,
        changes_tab=settings.changes_tab,
        require_existing=True,
        clock=lambda: ts,
    )
    if UPDATE_TEXT_FIELD in result.skipped_fields:
        raise SchemaError(f"Missing {UPDATE_TEXT_FIELD} column on {settings.live_tab}")
    if result.changed:
        logger.info("Posted update for %s", rid)
    return UpdatePost(id=f"{rid}::{ts}", ts=ts, text=cleaned, deduped=not result.changed)


@dataclass
class UndoResult:
    record_id: str
    field: str
    ts: str
    restored_value: str
    restored: bool


async def undo_change(
    gateway,
    settings: StoreSettings,
    record_id: str,
    *,
    ts: str = "",
    field: str = "",
    actor: str = "",
    clock: Callable[[], str] = utc_now_iso,
) -> UndoResult:
    """Revert one logged change and flag it undone.

    The matching entry is the not-undone change with exactly ``ts``, or the
    newest one for the record (optionally limited to ``field``).  Its
    ``before`` value is written back to the Live cell and verified, the
    entry is flagged ``isUndone`` and an undo entry (itself flagged undone
    so feeds ignore it) is appended.  Undoing when the Live cell already
    holds ``before`` only flags the entry.
    """

    rid = normalize_id(record_id)
    log = await read_change_log(gateway, settings.changes_tab)
    entry = find_entry(log, rid, ts=ts, field_name=field)
    if entry is None:
        raise RecordNotFoundError(f"No change to undo for {rid}")

    live = await load_table(gateway, settings.live_tab, label=f"Sheets get {settings.live_tab}")
    if not live.header:
        raise SchemaError(f"{settings.live_tab} has no header row")
    id_index = live.require_column(schema.RECORD_ID_ALIASES)
    position = live.find_position(id_index, rid)
    if position is None:
        raise RecordNotFoundError(f"No row for {rid!r} on {settings.live_tab}")
    column = index_header(live.header, [entry.field])
    if column == NOT_FOUND:
        raise SchemaError(f"Missing column {entry.field!r} on {settings.live_tab}")

    row_number = live.row_number(position)
    current = cell_text(live.padded(position)[column]).strip()
    restored = current != entry.before
    if restored:
        target = cell_range(settings.live_tab, row_number, column)
        await gateway.update(target, [[entry.before]], label=f"Sheets update {settings.live_tab} (undo)")
        await verify_range(gateway, target, rid, {0: (entry.field, entry.before)}, 1)

    await mark_undone(gateway, log, entry)

    if restored:
        ledger = ChangeLogEntry(clock(), rid, actor, entry.field, current, entry.before, is_undone=True)
        await append_changes(gateway, settings.changes_tab, [ledger], label=f"Sheets append {settings.changes_tab} (undo)")
        audit_log.record(
            rid,
            {entry.field: (current, entry.before)},
            event=audit_log.UNDO,
            actor=actor,
            tab=settings.live_tab,
            target_range=target,
            row_number=row_number,
            details={"undone_ts": entry.ts},
        )
        logger.info("Undid %s change %s for %s", entry.field, entry.ts, rid)

    return UndoResult(record_id=rid, field=entry.field, ts=entry.ts, restored_value=entry.before, restored=restored)


__all__ = [
    "UndoResult",
    "UpdatePost",
    "clean_update_text",
    "filter_changes",
    "forward_slug",
    "post_update",
    "save_profile",
    "undo_change",
]
