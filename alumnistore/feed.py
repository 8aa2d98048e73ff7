"""Community activity feed derived from the change log and the Live tab."""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from alumnistore import schema
from alumnistore.cache import RequestCache, cache_key, default_cache
from alumnistore.changelog import ChangeLogEntry, read_change_log
from alumnistore.settings import StoreSettings
from alumnistore.table import load_table, normalize_id

logger = logging.getLogger(__name__)

CURRENT_FIELDS = frozenset({"currentupdatetext", "currentupdatelink", "currentupdateexpiresat"})
EVENT_FIELDS = frozenset(
    {
        "upcomingeventtitle",
        "upcomingeventdate",
        "upcomingeventlink",
        "upcomingeventexpiresat",
        "upcomingeventdescription",
    }
)
STORY_FIELDS = frozenset(
    {
        "storytitle",
        "storyprogram",
        "storylocationname",
        "storyyears",
        "storypartners",
        "storyshortstory",
        "storyquote",
        "storyquoteauthor",
        "storymediaurl",
        "storymoreinfourl",
        "storycountry",
        "showonmap",
    }
)
MEDIA_BOOST = {
    "currentheadshotid": 14,
    "currentheadshoturl": 14,
    "featuredalbumid": 12,
    "featuredreelid": 10,
    "featuredeventid": 8,
}
MEDIA_TEXT = {
    "currentheadshotid": "Updated headshot",
    "currentheadshoturl": "Updated headshot",
    "featuredalbumid": "Updated photo gallery",
    "featuredreelid": "Updated reel",
    "featuredeventid": "Updated event media",
}

MAX_PER_RECORD = 3
MAX_BACKFILL_LOOPS = 25


@dataclass
class FeedItem:
    id: str
    ts: str
    record_id: str
    name: str
    slug: str
    label: str
    text: str
    kind: str
    field: str

    def to_json(self) -> Dict[str, str]:
        data = asdict(self)
        data["alumniId"] = data.pop("record_id")
        return data


@dataclass
class _Candidate:
    entry: ChangeLogEntry
    score: int
    kind: str
    when: float
    key: str


def parse_timestamp(value: str) -> float:
    """Seconds since the epoch for an ISO-ish timestamp; 0 when unparseable."""

    text = str(value or "").strip()
    if not text:
        return 0.0
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _live_value(live: Optional[Mapping[str, Any]], name: str) -> str:
    if not live:
        return ""
    wanted = name.lower()
    for key, value in live.items():
        if str(key).strip().lower() == wanted:
            return str(value if value is not None else "").strip()
    return ""


def score_entry(entry: ChangeLogEntry) -> Tuple[int, str]:
    """Return ``(score, kind)``; higher scores are better headlines."""

    name = entry.field.strip().lower()
    if name in CURRENT_FIELDS:
        return 500 + (40 if name == "currentupdatetext" else 0), "current"
    if name in EVENT_FIELDS:
        return 400 + (20 if name == "upcomingeventtitle" else 0), "event"
    if name in STORY_FIELDS:
        return 300 + (20 if name == "storytitle" else 0), "story"
    if name in MEDIA_BOOST:
        return 200 + MEDIA_BOOST[name], "media"
    return 100, "fallback"


def build_text(entry: ChangeLogEntry, kind: str, live: Optional[Mapping[str, Any]]) -> Tuple[str, str]:
    """Return ``(label, text)`` for a feed item."""

    name = entry.field.strip().lower()
    if kind == "current":
        text = entry.after.strip() if name == "currentupdatetext" else _live_value(live, "currentUpdateText")
        return "Current Update", text or "Updated profile"
    if kind == "event":
        title = entry.after.strip() if name == "upcomingeventtitle" else _live_value(live, "upcomingEventTitle")
        return "Upcoming Event", f"Added an event: {title}" if title else "Updated an event"
    if kind == "story":
        title = entry.after.strip() if name == "storytitle" else _live_value(live, "storyTitle")
        return "Story Map", f"Added a story to the map: {title}" if title else "Added a story to the map"
    if kind == "media":
        return "Media", MEDIA_TEXT.get(name, "Updated media")
    return "Profile", "Updated profile"


def _identity(record_id: str, live: Optional[Mapping[str, Any]]) -> Tuple[str, str]:
    name = _live_value(live, "name") or "Unknown"
    slug = _live_value(live, "slug") or record_id or "unknown"
    return name, slug


def _is_noop(entry: ChangeLogEntry) -> bool:
    before, after = entry.before.strip(), entry.after.strip()
    return before == after


def _dedup_key(entry: ChangeLogEntry) -> str:
    return f"{entry.record_id}::{entry.ts}::{entry.field}::{entry.after}::{'true' if entry.is_undone else ''}"


def _choose_best(entries: Sequence[ChangeLogEntry], used: Set[str]) -> Optional[_Candidate]:
    best: Optional[_Candidate] = None
    for entry in entries:
        key = _dedup_key(entry)
        if key in used:
            continue
        score, kind = score_entry(entry)
        when = parse_timestamp(entry.ts)
        if best is None or score > best.score or (score == best.score and when > best.when):
            best = _Candidate(entry=entry, score=score, kind=kind, when=when, key=key)
    return best


def _item(candidate: _Candidate, live_by_id: Mapping[str, Mapping[str, Any]]) -> FeedItem:
    entry = candidate.entry
    live = live_by_id.get(entry.record_id)
    name, slug = _identity(entry.record_id, live)
    label, text = build_text(entry, candidate.kind, live)
    return FeedItem(
        id=f"{entry.record_id}::{entry.ts}",
        ts=entry.ts,
        record_id=entry.record_id,
        name=name,
        slug=slug,
        label=label,
        text=text,
        kind=candidate.kind,
        field=entry.field,
    )


def _usable(entries: Iterable[ChangeLogEntry]) -> Dict[str, List[ChangeLogEntry]]:
    by_record: Dict[str, List[ChangeLogEntry]] = {}
    for entry in entries:
        if not entry.record_id or not entry.field or entry.is_undone or _is_noop(entry):
            continue
        by_record.setdefault(entry.record_id, []).append(entry)
    for group in by_record.values():
        group.sort(key=lambda entry: parse_timestamp(entry.ts), reverse=True)
    return by_record


def build_feed(
    entries: Iterable[ChangeLogEntry],
    live_by_id: Mapping[str, Mapping[str, Any]],
    limit: int = 5,
) -> List[FeedItem]:
    """Rank change-log entries into at most ``limit`` feed items.

    The first pass takes the best entry of every record.  When fewer records
    than ``limit`` exist, a second pass backfills further entries from the
    records already shown, at most ``MAX_PER_RECORD`` each, avoiding the same
    record twice in a row when there is an alternative.  The result is
    ordered newest first.  A non-positive ``limit`` yields no items.
    """

    limit = max(int(limit), 0)
    by_record = _usable(entries)
    used: Set[str] = set()

    first_pass: List[Tuple[float, FeedItem]] = []
    for group in by_record.values():
        pick = _choose_best(group, used)
        if pick is None:
            continue
        used.add(pick.key)
        first_pass.append((pick.when, _item(pick, live_by_id)))
    first_pass.sort(key=lambda pair: pair[0], reverse=True)
    out = first_pass[:limit]

    if len(out) < limit and len(by_record) < limit:
        included = [item.record_id for _, item in out]
        loops = 0
        while len(out) < limit and loops < MAX_BACKFILL_LOOPS:
            loops += 1
            pool = [
                pick
                for pick in (_choose_best(by_record.get(rid, []), used) for rid in included)
                if pick is not None
            ]
            if not pool:
                break
            pool.sort(key=lambda pick: (pick.score, pick.when), reverse=True)

            counts: Dict[str, int] = {}
            for _, item in out:
                counts[item.record_id] = counts.get(item.record_id, 0) + 1
            last_id = out[-1][1].record_id if out else ""

            chosen = pool[0]
            if len(pool) > 1 and chosen.entry.record_id == last_id:
                chosen = next((pick for pick in pool if pick.entry.record_id != last_id), chosen)
            if counts.get(chosen.entry.record_id, 0) >= MAX_PER_RECORD:
                alternative = next(
                    (pick for pick in pool if counts.get(pick.entry.record_id, 0) < MAX_PER_RECORD),
                    None,
                )
                if alternative is None:
                    break
                chosen = alternative

            used.add(chosen.key)
            out.append((chosen.when, _item(chosen, live_by_id)))

    out.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in out[:limit]]


@dataclass
class UpdateStreamItem:
    id: str
    ts: str
    record_id: str
    name: str
    slug: str
    text: str


_WHITESPACE = re.compile(r"\s+")


def build_update_stream(
    entries: Iterable[ChangeLogEntry],
    live_by_id: Mapping[str, Mapping[str, Any]],
    limit: int = 20,
) -> List[UpdateStreamItem]:
    """One item per person whose Live row carries a ``currentUpdateText``.

    ``ts`` is the newest live (not undone) change of that field, or ``"0"``.
    """

    limit = max(int(limit), 0)
    latest: Dict[str, Tuple[float, str]] = {}
    for entry in entries:
        if entry.field.strip().lower() != "currentupdatetext" or entry.is_undone or _is_noop(entry):
            continue
        when = parse_timestamp(entry.ts)
        if entry.record_id not in latest or when > latest[entry.record_id][0]:
            latest[entry.record_id] = (when, entry.ts)

    items: List[Tuple[float, UpdateStreamItem]] = []
    for raw_id, live in live_by_id.items():
        record_id = normalize_id(raw_id)
        text = _WHITESPACE.sub(" ", _live_value(live, "currentUpdateText"))
        if not record_id or not text:
            continue
        when, ts = latest.get(record_id, (0.0, "0"))
        name, slug = _identity(record_id, live)
        items.append(
            (when, UpdateStreamItem(id=f"{record_id}::{ts}", ts=ts, record_id=record_id, name=name, slug=slug, text=text))
        )
    items.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in items[:limit]]


async def live_rows_by_id(gateway, tab: str) -> Dict[str, Dict[str, str]]:
    """Map normalised record id to the Live row (as a dict)."""

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    if not table.header:
        return {}
    id_index = table.require_column(schema.RECORD_ID_ALIASES)
    rows: Dict[str, Dict[str, str]] = {}
    for row, record in zip(table.rows, table.objects()):
        record_id = normalize_id(row[id_index]) if id_index < len(row) else ""
        if record_id and record_id not in rows:
            rows[record_id] = record
    return rows


async def load_feed(
    gateway,
    settings: StoreSettings,
    limit: int = 5,
    *,
    cache: Optional[RequestCache] = None,
) -> List[FeedItem]:
    """Read the change log and Live tab (coalesced) and build the feed."""

    store = cache if cache is not None else default_cache(settings.cache_ttl_seconds)

    async def compute() -> List[FeedItem]:
        log = await read_change_log(gateway, settings.changes_tab)
        live = await live_rows_by_id(gateway, settings.live_tab)
        return build_feed(log.entries, live, limit)

    key = cache_key(schema.SCHEMA_VERSION, "feed", settings.changes_tab, settings.live_tab, f"l={limit}")
    return await store.cached(key, compute)


async def load_update_stream(
    gateway,
    settings: StoreSettings,
    limit: int = 20,
    *,
    cache: Optional[RequestCache] = None,
) -> List[UpdateStreamItem]:
    store = cache if cache is not None else default_cache(settings.cache_ttl_seconds)

    async def compute() -> List[UpdateStreamItem]:
        log = await read_change_log(gateway, settings.changes_tab)
        live = await live_rows_by_id(gateway, settings.live_tab)
        return build_update_stream(log.entries, live, limit)

    key = cache_key(schema.SCHEMA_VERSION, "stream", settings.changes_tab, settings.live_tab, f"l={limit}")
    return await store.cached(key, compute)


__all__ = [
    "FeedItem",
    "UpdateStreamItem",
    "build_feed",
    "build_text",
    "build_update_stream",
    "live_rows_by_id",
    "load_feed",
    "load_update_stream",
    "parse_timestamp",
    "score_entry",
]
