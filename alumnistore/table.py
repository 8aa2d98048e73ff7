"""Header-indexed access to worksheet rows.

Every tab is read as a header row followed by data rows.  Columns are found
by name (case-insensitive, trimmed, first alias wins) rather than by fixed
position, and rows written back are always aligned to the header that is on
the sheet *now*, so adding a column never shifts existing data.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from alumnistore.errors import SchemaError
from alumnistore.sheets_client import row_range as _row_range
from alumnistore.sheets_client import table_range

NOT_FOUND = -1


def _key(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def cell_text(value: Any) -> str:
    """Return the string form of a raw (unformatted) cell value."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_id(value: Any) -> str:
    return cell_text(value).strip().lower()


_TRUE_VALUES = {"true", "yes", "y", "1", "checked", "✓"}
_FALSE_VALUES = {"false", "no", "n", "0", "unchecked"}


def tri_state(value: Any) -> Optional[bool]:
    """Return ``True``/``False`` for boolean-like cells and ``None`` otherwise."""

    if isinstance(value, bool):
        return value
    text = cell_text(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def index_header(header_row: Sequence[Any], aliases: Iterable[str]) -> int:
    """Return the index of the first alias present in ``header_row`` or -1."""

    lookup = header_index_map(header_row)
    for alias in aliases:
        index = lookup.get(_key(alias))
        if index is not None:
            return index
    return NOT_FOUND


def header_index_map(header_row: Sequence[Any]) -> Dict[str, int]:
    mapping: Dict[str, int] = {}
    for index, name in enumerate(header_row):
        key = _key(name)
        if key and key not in mapping:
            mapping[key] = index
    return mapping


def row_to_object(header: Sequence[Any], row: Sequence[Any]) -> Dict[str, str]:
    """Map a (possibly ragged) row onto the header names."""

    record: Dict[str, str] = {}
    for index, name in enumerate(header):
        title = cell_text(name).strip()
        if not title or title in record:
            continue
        record[title] = cell_text(row[index]) if index < len(row) else ""
    return record


def align_row_to_header(header: Sequence[Any], record: Mapping[str, Any]) -> List[Any]:
    """Build a row of exactly ``len(header)`` cells from ``record``.

    Keys are matched case-insensitively; header columns with no value are
    empty strings and keys without a column are dropped.
    """

    by_key = {_key(name): value for name, value in record.items()}
    row: List[Any] = []
    for name in header:
        value = by_key.get(_key(name), "")
        row.append("" if value is None else value)
    return row


def pad_row(row: Sequence[Any], length: int) -> List[Any]:
    padded = list(row)
    if len(padded) < length:
        padded.extend([""] * (length - len(padded)))
    return padded


@dataclass
class SheetTable:
    """A tab read in one call: its header and the data rows below it."""

    title: str
    header: List[Any]
    rows: List[List[Any]] = field(default_factory=list)
    header_row: int = 1

    def index(self, aliases: Iterable[str]) -> int:
        return index_header(self.header, aliases)

    def require_column(self, aliases: Sequence[str]) -> int:
        return require_column(self.header, aliases, self.title)

    def find_position(self, column_index: int, value: Any) -> Optional[int]:
        """Return the 0-based data position whose id cell equals ``value``."""

        if column_index < 0:
            return None
        wanted = normalize_id(value)
        for position, row in enumerate(self.rows):
            if column_index < len(row) and normalize_id(row[column_index]) == wanted:
                return position
        return None

    def row_number(self, position: int) -> int:
        return self.header_row + 1 + position

    def row_range(self, row_number: int) -> str:
        return _row_range(self.title, row_number, columns=len(self.header))

    def padded(self, position: int) -> List[Any]:
        return pad_row(self.rows[position], len(self.header))

    def objects(self) -> List[Dict[str, str]]:
        return [row_to_object(self.header, row) for row in self.rows]


def require_column(header: Sequence[Any], aliases: Sequence[str], title: str = "") -> int:
    index = index_header(header, aliases)
    if index == NOT_FOUND:
        where = f" on {title}" if title else ""
        raise SchemaError(f"Missing column {aliases[0]!r}{where}")
    return index


def table_from_values(title: str, values: Sequence[Sequence[Any]], header_row: int = 1) -> SheetTable:
    values = [list(row) for row in values]
    if not values:
        return SheetTable(title=title, header=[], rows=[], header_row=header_row)
    return SheetTable(title=title, header=values[0], rows=values[1:], header_row=header_row)


async def load_table(gateway, title: str, header_row: int = 1, *, label: str = "") -> SheetTable:
    """Read ``title`` (header plus data rows) in a single call."""

    values = await gateway.get(table_range(title, header_row), label=label or f"Sheets get {title}")
    return table_from_values(title, values, header_row)


__all__ = [
    "NOT_FOUND",
    "SheetTable",
    "align_row_to_header",
    "cell_text",
    "header_index_map",
    "index_header",
    "load_table",
    "normalize_id",
    "pad_row",
    "require_column",
    "row_to_object",
    "table_from_values",
    "tri_state",
]
