"""Resolve which record a caller identity is allowed to modify.

Lookup order, first hit wins: identity columns of the Live tab, the manual
Aliases tab, then the change log (newest entry by that actor).
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from alumnistore import schema
from alumnistore.changelog import read_change_log
from alumnistore.errors import QuotaExceededError, SchemaError, StoreError
from alumnistore.settings import StoreSettings
from alumnistore.sheets_client import a1_range, column_letter, table_range
from alumnistore.table import NOT_FOUND, align_row_to_header, cell_text, load_table, normalize_id

logger = logging.getLogger(__name__)

_IDENTITY_COLUMN = re.compile(r"email|gmail", re.IGNORECASE)
_GMAIL_DOMAINS = {"gmail.com", "googlemail.com"}


def normalize_email(raw: object) -> str:
    """Canonical form of an email so equivalent Gmail spellings collide.

    >>> normalize_email(" Jane.Doe+news@GoogleMail.com ")
    'janedoe@gmail.com'
    """

    value = cell_text(raw).strip().lower()
    if "@" not in value:
        return value
    local, _, domain = value.rpartition("@")
    if domain in _GMAIL_DOMAINS:
        domain = "gmail.com"
        local = local.split("+", 1)[0].replace(".", "")
    return f"{local}@{domain}"


def is_admin(identity: str, admin_emails: Iterable[str]) -> bool:
    email = normalize_email(identity)
    if not email:
        return False
    return any(normalize_email(candidate) == email for candidate in admin_emails)


async def _from_live(gateway, email: str, tab: str) -> str:
    table = await load_table(gateway, tab, label=f"Sheets get {tab} (owner)")
    if not table.header:
        return ""
    id_index = table.require_column(schema.RECORD_ID_ALIASES)
    identity_columns = [
        index for index, name in enumerate(table.header) if _IDENTITY_COLUMN.search(cell_text(name))
    ]
    for row in table.rows:
        for column in identity_columns:
            if column < len(row) and normalize_email(row[column]) == email:
                record_id = normalize_id(row[id_index]) if id_index < len(row) else ""
                if record_id:
                    return record_id
    return ""


async def _from_aliases(gateway, email: str, tab: str) -> str:
    try:
        table = await load_table(gateway, tab, label=f"Sheets get {tab} (owner)")
    except QuotaExceededError:
        raise
    except StoreError as exc:
        logger.warning("Alias tab %s unavailable: %s", tab, exc)
        return ""
    email_index = table.index(schema.ALIAS_EMAIL_ALIASES)
    id_index = table.index(schema.RECORD_ID_ALIASES)
    if email_index == NOT_FOUND or id_index == NOT_FOUND:
        return ""
    for row in table.rows:
        if email_index < len(row) and normalize_email(row[email_index]) == email:
            record_id = normalize_id(row[id_index]) if id_index < len(row) else ""
            if record_id:
                return record_id
    return ""


async def _from_changes(gateway, email: str, tab: str) -> str:
    log = await read_change_log(gateway, tab)
    for entry in log.newest_first():
        if normalize_email(entry.actor) == email:
            return entry.record_id
    return ""


async def resolve_owner_record_id(gateway, identity: str, tabs: StoreSettings) -> str:
    """Return the record id owned by ``identity`` or ``""`` when none is linked."""

    email = normalize_email(identity)
    if not email:
        return ""
    for source, lookup, tab in (
        ("live", _from_live, tabs.live_tab),
        ("aliases", _from_aliases, tabs.aliases_tab),
        ("changes", _from_changes, tabs.changes_tab),
    ):
        record_id = await lookup(gateway, email, tab)
        if record_id:
            logger.debug("Resolved %s to %s via %s", email, record_id, source)
            return record_id
    return ""


async def ensure_alias(gateway, identity: str, record_id: str, tab: str) -> bool:
    """Link ``identity`` to ``record_id`` on the alias tab; ``True`` if a row was added."""

    email = normalize_email(identity)
    rid = normalize_id(record_id)
    if not email or not rid:
        return False

    table = await load_table(gateway, tab, label=f"Sheets get {tab}")
    header: List[object] = list(table.header)
    if not header:
        header = list(schema.ALIASES_HEADER)
        await gateway.update(
            a1_range(tab, f"A1:{column_letter(len(header))}1"),
            [header],
            label=f"Sheets update {tab} header",
        )
    email_index = table.index(schema.ALIAS_EMAIL_ALIASES) if table.header else 0
    id_index = table.index(schema.RECORD_ID_ALIASES) if table.header else 1
    if email_index == NOT_FOUND or id_index == NOT_FOUND:
        raise SchemaError(f"{tab} must have email and alumniId columns")

    for row in table.rows:
        if (
            email_index < len(row)
            and id_index < len(row)
            and normalize_email(row[email_index]) == email
            and normalize_id(row[id_index]) == rid
        ):
            return False

    values = {cell_text(header[email_index]): email, cell_text(header[id_index]): rid}
    await gateway.append(table_range(tab), [align_row_to_header(header, values)], label=f"Sheets append {tab}")
    logger.info("Linked %s to %s", email, rid)
    return True


def owned_by(owner_id: Optional[str], record_id: str) -> bool:
    return bool(owner_id) and normalize_id(owner_id) == normalize_id(record_id)


__all__ = [
    "ensure_alias",
    "is_admin",
    "normalize_email",
    "owned_by",
    "resolve_owner_record_id",
]
