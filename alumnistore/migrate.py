"""Batch migration of the raw source tab into the Live tab.

Both tabs are read once, every source row is merged into its Live row with
the same never-blank rule as :mod:`alumnistore.upsert`, the whole Live
matrix is written back in one call and all change rows are appended in one
call.  No per-row RPCs.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Sequence

from alumnistore import audit_log, schema
from alumnistore.changelog import ChangeLogEntry, append_changes, ensure_changes_header, utc_now_iso
from alumnistore.errors import SchemaError
from alumnistore.feed import parse_timestamp
from alumnistore.media import to_iso_or_empty
from alumnistore.settings import StoreSettings
from alumnistore.sheets_client import a1_range
from alumnistore.table import (
    NOT_FOUND,
    cell_text,
    index_header,
    load_table,
    normalize_id,
    row_to_object,
    tri_state,
)
from alumnistore.upsert import merge_fields

logger = logging.getLogger(__name__)

# source column -> Live field
SOURCE_COLUMNS: Dict[str, str] = {
    "Name": "name",
    "Role": "roles",
    "Location": "location",
    "Headshot URL": "currentHeadshotUrl",
    "Artist Email": "email",
    "Artist URL": "website",
    "Current Work": "currentWork",
    "Artist Statement": "bioLong",
    "Status Signifier": "statusFlags",
}
SOURCE_ID_COLUMNS = ("Profile ID", "slug")
SOURCE_PUBLIC_COLUMN = "Show on Profile?"
SOURCE_SOCIALS_COLUMN = "Artist Social Links"
SOURCE_MODIFIED_COLUMN = "lastModified"

_SOCIAL_PATTERNS = {
    "instagram": (
        re.compile(r"https?://(?:www\.)?instagram\.com/[A-Za-z0-9._-]+", re.IGNORECASE),
        re.compile(r"instagram\.com/[A-Za-z0-9._-]+", re.IGNORECASE),
    ),
    "youtube": (
        re.compile(r"https?://(?:www\.)?youtube\.com/[^\s,;]+", re.IGNORECASE),
        re.compile(r"https?://youtu\.be/[^\s,;]+", re.IGNORECASE),
        re.compile(r"youtube\.com/[^\s,;]+", re.IGNORECASE),
        re.compile(r"youtu\.be/[^\s,;]+", re.IGNORECASE),
    ),
    "vimeo": (
        re.compile(r"https?://(?:www\.)?vimeo\.com/[0-9A-Za-z/_-]+", re.IGNORECASE),
        re.compile(r"vimeo\.com/[0-9A-Za-z/_-]+", re.IGNORECASE),
    ),
    "imdb": (
        re.compile(r"https?://(?:www\.)?imdb\.com/name/nm\d+", re.IGNORECASE),
        re.compile(r"imdb\.com/name/nm\d+", re.IGNORECASE),
    ),
}
_INSTAGRAM_HANDLE = re.compile(r"@([A-Za-z0-9._-]{2,})")


def _as_url(match: str) -> str:
    return match if match.lower().startswith("http") else f"https://{match}"


def parse_socials(blob: str) -> Dict[str, str]:
    """Pull instagram/youtube/vimeo/imdb links out of a free-text cell."""

    text = (blob or "").strip()
    found: Dict[str, str] = {}
    for network, patterns in _SOCIAL_PATTERNS.items():
        found[network] = ""
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                found[network] = _as_url(match.group(0))
                break
    if not found["instagram"]:
        handle = _INSTAGRAM_HANDLE.search(text)
        if handle:
            found["instagram"] = f"@{handle.group(1)}"
    return found


def source_record_id(source: Mapping[str, str]) -> str:
    for column in SOURCE_ID_COLUMNS:
        value = normalize_id(source.get(column, ""))
        if value:
            return value
    return ""


def _next_updated_at(live_value: str, source_value: str) -> str:
    # Only move forward; never stamp "now" so reruns stay clean.
    source_iso = to_iso_or_empty(source_value) if source_value else ""
    if not live_value:
        return source_iso
    if source_iso and (not parse_timestamp(live_value) or parse_timestamp(source_iso) > parse_timestamp(live_value)):
        return source_iso
    return live_value


def map_source_row(source: Mapping[str, str], live_updated_at: str = "") -> Dict[str, str]:
    """Translate one source row into Live field values."""

    mapped = {field: str(source.get(column, "") or "").strip() for column, field in SOURCE_COLUMNS.items()}
    slug = normalize_id(source.get("slug", ""))
    if slug:
        mapped["slug"] = slug
    mapped.update(parse_socials(str(source.get(SOURCE_SOCIALS_COLUMN, "") or "")))
    public = tri_state(source.get(SOURCE_PUBLIC_COLUMN, ""))
    if public is not None:
        mapped["isPublic"] = "true" if public else "false"
    updated_at = _next_updated_at(live_updated_at, str(source.get(SOURCE_MODIFIED_COLUMN, "") or "").strip())
    if updated_at:
        mapped["updatedAt"] = updated_at
    return mapped


@dataclass
class MigrationReport:
    touched_rows: int = 0
    changed_cells: int = 0
    change_rows: int = 0
    new_rows: int = 0
    updated_rows: int = 0
    skipped_no_id: int = 0
    dry_run: bool = False

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


async def migrate_source_to_live(gateway, settings: StoreSettings, *, dry_run: bool = False) -> MigrationReport:
    report = MigrationReport(dry_run=dry_run)

    source = await load_table(gateway, settings.source_tab, label=f"Sheets get {settings.source_tab}")
    live = await load_table(gateway, settings.live_tab, label=f"Sheets get {settings.live_tab}")
    if not live.header:
        raise SchemaError(f"{settings.live_tab} has no header row")
    header: Sequence[Any] = live.header
    id_index = live.require_column(schema.RECORD_ID_ALIASES)
    status_index = index_header(header, schema.STATUS_ALIASES)
    updated_index = index_header(header, schema.UPDATED_AT_ALIASES)
    email_index = index_header(header, ("email",))

    matrix: List[List[Any]] = [live.padded(position) for position in range(len(live.rows))]
    positions: Dict[str, int] = {}
    for position, row in enumerate(matrix):
        record_id = normalize_id(row[id_index])
        if record_id and record_id not in positions:
            positions[record_id] = position

    pending: List[ChangeLogEntry] = []
    for raw in source.rows:
        record = row_to_object(source.header, raw)
        record_id = source_record_id(record)
        if not record_id:
            report.skipped_no_id += 1
            continue

        is_new = record_id not in positions
        if is_new:
            blank: List[Any] = [""] * len(header)
            blank[id_index] = record_id
            if status_index != NOT_FOUND:
                blank[status_index] = "pending"
            matrix.append(blank)
            positions[record_id] = len(matrix) - 1
            report.new_rows += 1
        position = positions[record_id]

        current = matrix[position]
        live_updated = cell_text(current[updated_index]).strip() if updated_index != NOT_FOUND else ""
        updates = map_source_row(record, live_updated)
        merged, changes, _skipped = merge_fields(header, current, updates, id_index=id_index)
        if not changes:
            continue

        matrix[position] = merged
        actor = updates.get("email") or (cell_text(current[email_index]).strip() if email_index != NOT_FOUND else "")
        ts = utc_now_iso()
        pending.extend(ChangeLogEntry(ts, record_id, actor, change.field, change.before, change.after) for change in changes)
        report.changed_cells += len(changes)
        report.touched_rows += 1
        if not is_new:
            report.updated_rows += 1

    report.change_rows = len(pending)
    if dry_run:
        await ensure_changes_header(gateway, settings.changes_tab, dry_run=True)
        logger.info("Dry run: %s", report.to_json())
        return report

    await ensure_changes_header(gateway, settings.changes_tab)
    if report.touched_rows or report.new_rows:
        await gateway.update(
            a1_range(settings.live_tab, "A1"),
            [list(header)] + matrix,
            label=f"Sheets update {settings.live_tab} (whole sheet)",
        )
    await append_changes(gateway, settings.changes_tab, pending, label=f"Sheets append {settings.changes_tab} (migration)")
    audit_log.record("*", {}, event=audit_log.MIGRATION, tab=settings.live_tab, details=report.to_json())
    logger.info("Migration finished: %s", report.to_json())
    return report


__all__ = [
    "MigrationReport",
    "map_source_row",
    "migrate_source_to_live",
    "parse_socials",
    "source_record_id",
]
