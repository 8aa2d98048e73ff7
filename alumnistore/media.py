"""Media asset rows: reading, uploads, and the current/featured flag."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from alumnistore import schema
from alumnistore.changelog import utc_now_iso
from alumnistore.errors import ForbiddenError, RecordNotFoundError, SchemaError
from alumnistore.ownership import is_admin, owned_by, resolve_owner_record_id
from alumnistore.settings import StoreSettings
from alumnistore.sheets_client import a1_range, cell_range, column_letter, table_range
from alumnistore.table import NOT_FOUND, SheetTable, align_row_to_header, cell_text, load_table, normalize_id, tri_state
from alumnistore.upsert import UpsertResult, upsert_fields

logger = logging.getLogger(__name__)

SERIAL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)
_DATE_FORMATS = ("%m/%d/%Y %H:%M:%S", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d")


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def to_iso_or_empty(value: Any) -> str:
    """Normalise an upload timestamp to ISO-8601 UTC, or ``""``.

    Accepts ISO strings, spreadsheet serial day numbers (epoch 1899-12-30)
    and a few common date layouts.
    """

    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, (int, float)):
        if math.isnan(value) or value <= 0:
            return ""
        return _iso(SERIAL_EPOCH + timedelta(days=float(value)))
    text = str(value).strip()
    if not text:
        return ""
    try:
        return to_iso_or_empty(float(text))
    except ValueError:
        pass
    try:
        return _iso(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for layout in _DATE_FORMATS:
        try:
            return _iso(datetime.strptime(text, layout))
        except ValueError:
            continue
    try:
        return _iso(parsedate_to_datetime(text))
    except (TypeError, ValueError):
        return ""


@dataclass
class MediaAsset:
    record_id: str
    kind: str
    file_id: str = ""
    external_url: str = ""
    uploaded_at: str = ""
    uploaded_by: str = ""
    collection_id: str = ""
    collection_title: str = ""
    is_current: bool = False
    is_featured: bool = False
    sort_index: str = ""
    note: str = ""
    row_number: int = 0

    @property
    def file_ref(self) -> str:
        return self.file_id or self.external_url

    @property
    def flagged(self) -> bool:
        return self.is_current if self.kind == "headshot" else self.is_featured

    def as_record(self) -> Dict[str, str]:
        return {
            "alumniId": self.record_id,
            "kind": self.kind,
            "collectionId": self.collection_id,
            "collectionTitle": self.collection_title,
            "fileId": self.file_id,
            "externalUrl": self.external_url,
            "uploadedByEmail": self.uploaded_by,
            "uploadedAt": self.uploaded_at,
            "isCurrent": "TRUE" if self.is_current else "",
            "isFeatured": "TRUE" if self.is_featured else "",
            "sortIndex": self.sort_index,
            "note": self.note,
        }

    def to_json(self) -> Dict[str, Any]:
        return {
            "alumniId": self.record_id,
            "kind": self.kind,
            "fileId": self.file_id,
            "uploadedAt": self.uploaded_at,
            "uploadedByEmail": self.uploaded_by,
            "collectionId": self.collection_id,
            "collectionTitle": self.collection_title,
            "externalUrl": self.external_url,
            "isCurrent": self.is_current,
            "isFeatured": self.is_featured,
            "sortIndex": self.sort_index,
            "note": self.note,
        }


class _MediaColumns:
    def __init__(self, table: SheetTable) -> None:
        self.record_id = table.require_column(schema.RECORD_ID_ALIASES)
        self.kind = table.require_column(schema.MEDIA_KIND_ALIASES)
        self.file_id = table.index(schema.MEDIA_FILE_ALIASES)
        self.external_url = table.index(schema.MEDIA_EXTERNAL_URL_ALIASES)
        if self.file_id == NOT_FOUND and self.external_url == NOT_FOUND:
            raise SchemaError(f"{table.title} has neither a fileId nor an externalUrl column")
        self.uploaded_at = table.index(schema.MEDIA_UPLOADED_AT_ALIASES)
        self.uploaded_by = table.index(schema.MEDIA_UPLOADED_BY_ALIASES)
        self.collection_id = table.index(schema.MEDIA_COLLECTION_ID_ALIASES)
        self.collection_title = table.index(schema.MEDIA_COLLECTION_TITLE_ALIASES)
        self.is_current = table.index(schema.MEDIA_IS_CURRENT_ALIASES)
        self.is_featured = table.index(schema.MEDIA_IS_FEATURED_ALIASES)
        self.sort_index = table.index(schema.MEDIA_SORT_INDEX_ALIASES)
        self.note = table.index(schema.MEDIA_NOTE_ALIASES)


def _cell(row: Sequence[Any], index: int) -> Any:
    if index == NOT_FOUND or index >= len(row):
        return ""
    return row[index]


def _text(row: Sequence[Any], index: int) -> str:
    return cell_text(_cell(row, index)).strip()


def _asset_from_row(columns: _MediaColumns, row: Sequence[Any], row_number: int) -> MediaAsset:
    return MediaAsset(
        record_id=normalize_id(_cell(row, columns.record_id)),
        kind=_text(row, columns.kind).lower(),
        file_id=_text(row, columns.file_id),
        external_url=_text(row, columns.external_url),
        uploaded_at=to_iso_or_empty(_cell(row, columns.uploaded_at)),
        uploaded_by=_text(row, columns.uploaded_by),
        collection_id=_text(row, columns.collection_id),
        collection_title=_text(row, columns.collection_title),
        is_current=tri_state(_cell(row, columns.is_current)) is True,
        is_featured=tri_state(_cell(row, columns.is_featured)) is True,
        sort_index=_text(row, columns.sort_index),
        note=_text(row, columns.note),
        row_number=row_number,
    )


async def read_media(gateway, tab: str) -> List[MediaAsset]:
    """Return every media row on ``tab``."""

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    if not table.header:
        return []
    columns = _MediaColumns(table)
    return [
        _asset_from_row(columns, row, table.row_number(position))
        for position, row in enumerate(table.rows)
        if normalize_id(_cell(row, columns.record_id))
    ]


def _validate_kind(kind: str) -> str:
    value = str(kind or "").strip().lower()
    if value not in schema.MEDIA_KINDS:
        raise ValueError(f"Unknown media kind {kind!r}")
    return value


async def set_exclusive_flag(
    gateway,
    record_id: str,
    kind: str,
    target_file_ref: str,
    tab: str,
    *,
    newest: bool = False,
) -> int:
    """Make ``target_file_ref`` the only flagged asset of (``record_id``, ``kind``).

    The target's flag becomes ``TRUE`` and every sibling currently flagged
    becomes ``FALSE``, all in one batch write.  When several rows carry the
    same file, the first one is the target, or the last one with
    ``newest=True``.  Returns the number of cells written (0 when the group
    was already consistent).
    """

    kind = _validate_kind(kind)
    rid = normalize_id(record_id)
    ref = str(target_file_ref or "").strip()

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    if not table.header:
        raise SchemaError(f"{tab} has no header row")
    columns = _MediaColumns(table)
    flag_column = table.index(schema.flag_aliases(kind))
    if flag_column == NOT_FOUND:
        raise SchemaError(f"{tab} is missing the {schema.flag_aliases(kind)[0]} column")

    group: List[Tuple[int, Sequence[Any]]] = []
    target: Optional[int] = None
    for position, row in enumerate(table.rows):
        if normalize_id(_cell(row, columns.record_id)) != rid or _text(row, columns.kind).lower() != kind:
            continue
        group.append((position, row))
        matches = bool(ref) and ref in {_text(row, columns.file_id), _text(row, columns.external_url)}
        if matches and (target is None or newest):
            target = position

    if target is None:
        raise RecordNotFoundError(f"File {ref!r} not found for {rid}/{kind} on {tab}")

    data: List[Dict[str, Any]] = []
    for position, row in group:
        state = tri_state(_cell(row, flag_column))
        if position == target:
            if state is not True or _text(row, flag_column) != "TRUE":
                data.append({"range": cell_range(tab, table.row_number(position), flag_column), "values": [["TRUE"]]})
        elif state is True:
            data.append({"range": cell_range(tab, table.row_number(position), flag_column), "values": [["FALSE"]]})

    if data:
        await gateway.batch_update(data, label=f"Sheets batchUpdate {tab} (feature {kind})")
        logger.info("Featured %s for %s/%s (%d cell(s))", ref, rid, kind, len(data))
    return len(data)


async def record_upload(gateway, asset: MediaAsset, tab: str, *, make_current: bool = True) -> MediaAsset:
    """Append ``asset`` to the media tab, optionally making it the current one."""

    asset.kind = _validate_kind(asset.kind)
    asset.record_id = normalize_id(asset.record_id)
    if not asset.record_id or not asset.file_ref:
        raise ValueError("An upload needs a record id and a file id or external URL")
    if not asset.uploaded_at:
        asset.uploaded_at = utc_now_iso()

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    header: List[Any] = list(table.header)
    if not header:
        header = list(schema.MEDIA_HEADER)
        await gateway.update(
            a1_range(tab, f"A1:{column_letter(len(header))}1"),
            [header],
            label=f"Sheets update {tab} header",
        )
    flagged = asset.is_current or asset.is_featured
    asset.is_current = asset.is_featured = False
    await gateway.append(table_range(tab), [align_row_to_header(header, asset.as_record())], label=f"Sheets append {tab}")
    logger.info("Recorded %s upload %s for %s", asset.kind, asset.file_ref, asset.record_id)

    if make_current or flagged:
        await set_exclusive_flag(gateway, asset.record_id, asset.kind, asset.file_ref, tab, newest=True)
        if asset.kind == "headshot":
            asset.is_current = True
        else:
            asset.is_featured = True
    return asset


async def set_live_pointer(
    gateway,
    record_id: str,
    kind: str,
    file_id: str,
    actor: str,
    live_tab: str,
    *,
    changes_tab: Optional[str] = None,
    url: str = "",
) -> UpsertResult:
    """Point the Live row's asset column for ``kind`` at ``file_id``."""

    kind = _validate_kind(kind)
    updates: Dict[str, Any] = {schema.LIVE_ASSET_COLUMN[kind]: file_id}
    if kind == "headshot" and url:
        updates["currentHeadshotUrl"] = url
    return await upsert_fields(
        gateway,
        record_id,
        live_tab,
        updates,
        actor,
        changes_tab=changes_tab,
        touch_fields={"status": "needs_review", "updatedAt": utc_now_iso(), "lastChangeType": "media"},
        require_existing=True,
    )


async def feature_media(
    gateway,
    settings: StoreSettings,
    record_id: str,
    kind: str,
    file_ref: str,
    *,
    identity: Optional[str] = None,
) -> UpsertResult:
    """Flag an existing media row and point the Live row at it.

    When ``identity`` is given, non-admin callers must own ``record_id``.
    """

    if identity is not None and not is_admin(identity, settings.admin_emails):
        owner = await resolve_owner_record_id(gateway, identity, settings)
        if not owned_by(owner, record_id):
            raise ForbiddenError(f"{identity} may not modify {record_id}")

    await set_exclusive_flag(gateway, record_id, kind, file_ref, settings.media_tab)
    return await set_live_pointer(
        gateway,
        record_id,
        kind,
        file_ref,
        identity or "",
        settings.live_tab,
        changes_tab=settings.changes_tab,
    )


def _sort_number(value: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return math.inf
    return number if math.isfinite(number) else math.inf


def _timestamp(value: str) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def list_media(
    assets: Sequence[MediaAsset],
    record_id: str,
    kind: str = "all",
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[MediaAsset], int]:
    """Filter, order and page the assets of ``record_id``.

    Order: newest upload first, then ascending numeric sort index, then file
    id descending.  Returns the page and the total before paging.
    """

    rid = normalize_id(record_id)
    wanted = str(kind or "all").strip().lower()
    matches = [
        asset
        for asset in assets
        if asset.record_id == rid and (wanted == "all" or asset.kind == wanted)
    ]
    matches.sort(key=lambda asset: asset.file_id, reverse=True)
    matches.sort(key=lambda asset: _sort_number(asset.sort_index))
    matches.sort(key=lambda asset: _timestamp(asset.uploaded_at), reverse=True)
    return matches[offset : offset + limit], len(matches)


__all__ = [
    "MediaAsset",
    "feature_media",
    "list_media",
    "read_media",
    "record_upload",
    "set_exclusive_flag",
    "set_live_pointer",
    "to_iso_or_empty",
]
