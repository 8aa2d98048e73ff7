"""Column names, alias groups and field conventions of the alumni workbook."""
from __future__ import annotations

import re
from typing import Dict, Tuple

SCHEMA_VERSION = 1

# Header alias groups (first match wins) ------------------------------------
RECORD_ID_ALIASES: Tuple[str, ...] = ("alumniId", "alumni id", "alumni_id", "id", "slug")
NAME_ALIASES: Tuple[str, ...] = ("name", "full name")
SLUG_ALIASES: Tuple[str, ...] = ("slug",)
STATUS_ALIASES: Tuple[str, ...] = ("status",)
UPDATED_AT_ALIASES: Tuple[str, ...] = ("updatedAt", "updated at")
LAST_CHANGE_ALIASES: Tuple[str, ...] = ("lastChangeType", "last change type")

ALIAS_EMAIL_ALIASES: Tuple[str, ...] = ("email", "gmail", "identity")

CHANGE_TS_ALIASES: Tuple[str, ...] = ("ts", "timestamp", "submittedAt")
CHANGE_ACTOR_ALIASES: Tuple[str, ...] = ("email", "actor", "submittedByEmail")
CHANGE_FIELD_ALIASES: Tuple[str, ...] = ("field",)
CHANGE_BEFORE_ALIASES: Tuple[str, ...] = ("before",)
CHANGE_AFTER_ALIASES: Tuple[str, ...] = ("after",)
CHANGE_UNDONE_ALIASES: Tuple[str, ...] = ("isUndone", "is undone", "undone")

MEDIA_KIND_ALIASES: Tuple[str, ...] = ("kind",)
MEDIA_FILE_ALIASES: Tuple[str, ...] = ("fileId", "file id")
MEDIA_UPLOADED_AT_ALIASES: Tuple[str, ...] = ("uploadedAt", "uploaded at")
MEDIA_UPLOADED_BY_ALIASES: Tuple[str, ...] = ("uploadedByEmail", "uploaded by email", "uploadedBy")
MEDIA_COLLECTION_ID_ALIASES: Tuple[str, ...] = ("collectionId", "collection id")
MEDIA_COLLECTION_TITLE_ALIASES: Tuple[str, ...] = ("collectionTitle", "collection title")
MEDIA_EXTERNAL_URL_ALIASES: Tuple[str, ...] = ("externalUrl", "external url")
MEDIA_IS_CURRENT_ALIASES: Tuple[str, ...] = ("isCurrent", "is current")
MEDIA_IS_FEATURED_ALIASES: Tuple[str, ...] = ("isFeatured", "is featured")
MEDIA_SORT_INDEX_ALIASES: Tuple[str, ...] = ("sortIndex", "sort index")
MEDIA_NOTE_ALIASES: Tuple[str, ...] = ("note", "notes")

# Fixed headers ---------------------------------------------------------------
CHANGES_HEADER: Tuple[str, ...] = ("ts", "alumniId", "email", "field", "before", "after")
CHANGES_HEADER_WITH_UNDO: Tuple[str, ...] = CHANGES_HEADER + ("isUndone",)
ALIASES_HEADER: Tuple[str, ...] = ("email", "alumniId")
SLUGS_HEADER: Tuple[str, ...] = ("fromSlug", "toSlug", "createdAt")
MEDIA_HEADER: Tuple[str, ...] = (
    "alumniId",
    "kind",
    "collectionId",
    "collectionTitle",
    "fileId",
    "externalUrl",
    "uploadedByEmail",
    "uploadedAt",
    "isCurrent",
    "isFeatured",
    "sortIndex",
    "note",
)

# Media ---------------------------------------------------------------------
MEDIA_KINDS: Tuple[str, ...] = ("headshot", "album", "reel", "event")

LIVE_ASSET_COLUMN: Dict[str, str] = {
    "headshot": "currentHeadshotId",
    "album": "featuredAlbumId",
    "reel": "featuredReelId",
    "event": "featuredEventId",
}


def flag_aliases(kind: str) -> Tuple[str, ...]:
    """Return the flag column that marks the chosen asset of ``kind``."""

    return MEDIA_IS_CURRENT_ALIASES if kind == "headshot" else MEDIA_IS_FEATURED_ALIASES


# Field conventions ----------------------------------------------------------
BOOLEAN_FIELDS = frozenset(
    name.lower()
    for name in (
        "isPublic",
        "showOnMap",
        "isCurrent",
        "isFeatured",
        "isBiCoastal",
        "isUndone",
        "isArchived",
    )
)

SERVER_CONTROLLED_FIELDS = frozenset({"updatedat"})
ADMIN_ONLY_FIELDS = frozenset({"ispublic", "status"})
STABLE_ID_FIELDS = frozenset({"alumniid", "slug", "id"})

_FIELD_ALIASES: Dict[str, str] = {
    "bio": "bioLong",
    "bio long": "bioLong",
    "biolong": "bioLong",
    "artiststatement": "bioLong",
    "artist statement": "bioLong",
    "artistbio": "bioLong",
    "artist bio": "bioLong",
    "bioshort": "bioShort",
    "bio short": "bioShort",
    "statusflag": "statusFlags",
    "status flag": "statusFlags",
    "statusflags": "statusFlags",
    "programbadges": "programs",
    "program badges": "programs",
    "projectbadges": "programs",
    "project badges": "programs",
    "currentheadshoturl": "currentHeadshotUrl",
    "secondlocation": "secondLocation",
    "backgroundstyle": "backgroundStyle",
    "backgroundchoice": "backgroundChoice",
    "isbicoastal": "isBiCoastal",
    "publicemail": "publicEmail",
}

_SEPARATORS = re.compile(r"[\s_-]+")


def canonical_field(key: str) -> str:
    """Map a UI/form key to the Live column name.

    Keys are matched exactly (lowercased) and then with separators removed,
    so ``"Artist Statement"``, ``"bio_long"`` and ``"bio-long"`` all land on
    ``bioLong``. Unknown keys are returned trimmed.
    """

    raw = str(key or "").strip()
    if not raw:
        return ""
    lowered = raw.lower()
    if lowered in _FIELD_ALIASES:
        return _FIELD_ALIASES[lowered]
    smashed = _SEPARATORS.sub("", lowered)
    if smashed in _FIELD_ALIASES:
        return _FIELD_ALIASES[smashed]
    return raw


def is_boolean_field(name: str) -> bool:
    return str(name or "").strip().lower() in BOOLEAN_FIELDS


__all__ = [
    "ALIASES_HEADER",
    "BOOLEAN_FIELDS",
    "CHANGES_HEADER",
    "CHANGES_HEADER_WITH_UNDO",
    "LIVE_ASSET_COLUMN",
    "MEDIA_HEADER",
    "MEDIA_KINDS",
    "RECORD_ID_ALIASES",
    "SCHEMA_VERSION",
    "SLUGS_HEADER",
    "canonical_field",
    "flag_aliases",
    "is_boolean_field",
]
