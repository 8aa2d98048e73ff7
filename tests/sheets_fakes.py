from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from alumnistore.settings import StoreSettings
from alumnistore.sheets_client import SheetsGateway

_CELL = re.compile(r"^([A-Z]+)(\d+)(?::([A-Z]+)(\d*))?$")


def _column_index(letters: str) -> int:
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - 64)
    return index - 1


class _FakeRequest:
    def __init__(self, callback):
        self._callback = callback

    def execute(self):
        return self._callback()


class _FakeValues:
    def __init__(self, service: "FakeService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, range: str, valueRenderOption: str = "FORMATTED_VALUE"):  # noqa: N802,N803
        return self._service._request("get", range, lambda: self._service._handle_get(range))

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]):  # noqa: N802,N803
        return self._service._request("update", range, lambda: self._service._handle_update(range, body["values"]))

    def append(  # noqa: N802
        self,
        spreadsheetId: str,  # noqa: N803
        range: str,
        valueInputOption: str,  # noqa: N803
        insertDataOption: str,  # noqa: N803
        body: Dict[str, Any],
    ):
        return self._service._request("append", range, lambda: self._service._handle_append(range, body["values"]))

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803
        ranges = ",".join(entry["range"] for entry in body.get("data", []))
        return self._service._request("batchUpdate", ranges, lambda: self._service._handle_batch_update(body))


class _FakeSpreadsheets:
    def __init__(self, service: "FakeService") -> None:
        self._service = service

    def values(self) -> _FakeValues:
        return _FakeValues(self._service)


class _FakeFiles:
    def __init__(self, files: Dict[str, Dict[str, Any]]) -> None:
        self._files = files

    def get(self, fileId: str, fields: str = "", supportsAllDrives: bool = False):  # noqa: N803
        def callback():
            if fileId not in self._files:
                raise LookupError(f"File {fileId} not found")
            return dict(self._files[fileId])

        return _FakeRequest(callback)


class FakeDrive:
    def __init__(self, files: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.files_by_id = dict(files or {})

    def files(self) -> _FakeFiles:
        return _FakeFiles(self.files_by_id)


class FakeService:
    """In-memory spreadsheet keyed by tab title.

    ``calls`` records ``(method, range)`` for every executed request.
    ``failures`` is a queue of exceptions raised by the next requests.
    ``after_write`` is called with ``(tab, rows)`` after each write so a test
    can make a stored value drift before it is read back.
    """

    def __init__(self, tabs: Optional[Dict[str, Iterable[Iterable[Any]]]] = None) -> None:
        self.tabs: Dict[str, List[List[Any]]] = {
            title: [list(row) for row in rows] for title, rows in (tabs or {}).items()
        }
        self.calls: List[Tuple[str, str]] = []
        self.failures: List[BaseException] = []
        self.after_write: Optional[Callable[[str, List[List[Any]]], None]] = None

    def spreadsheets(self) -> _FakeSpreadsheets:
        return _FakeSpreadsheets(self)

    # Inspection helpers -----------------------------------------------
    def rows(self, title: str) -> List[List[Any]]:
        return self.tabs.get(title, [])

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def writes(self) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[0] != "get"]

    # Internal helpers -------------------------------------------------
    def _request(self, method: str, range_spec: str, callback):
        def execute():
            if self.failures:
                raise self.failures.pop(0)
            self.calls.append((method, range_spec))
            return callback()

        return _FakeRequest(execute)

    @staticmethod
    def _split_range(range_spec: str) -> Tuple[str, int, int, Optional[int], Optional[int]]:
        sheet, cell_range = range_spec.split("!", 1)
        sheet = sheet.strip()
        if sheet.startswith("'") and sheet.endswith("'") and len(sheet) >= 2:
            sheet = sheet[1:-1].replace("''", "'")
        match = _CELL.match(cell_range)
        if not match:
            raise ValueError(f"Unable to parse range: {range_spec}")
        start_col = _column_index(match.group(1))
        start_row = int(match.group(2)) - 1
        end_col = _column_index(match.group(3)) if match.group(3) else None
        end_row = int(match.group(4)) - 1 if match.group(4) else None
        if match.group(3) is None:
            end_col, end_row = start_col, start_row
        return sheet, start_row, start_col, end_row, end_col

    def _handle_get(self, range_spec: str) -> Dict[str, Any]:
        sheet, start_row, start_col, end_row, end_col = self._split_range(range_spec)
        rows = self.tabs.get(sheet, [])
        last_row = len(rows) - 1 if end_row is None else min(end_row, len(rows) - 1)
        values: List[List[Any]] = []
        for row in rows[start_row : last_row + 1]:
            stop = len(row) if end_col is None else end_col + 1
            cells = list(row[start_col:stop])
            while cells and cells[-1] in ("", None):
                cells.pop()
            values.append(cells)
        while values and not values[-1]:
            values.pop()
        return {"values": values} if values else {"range": range_spec}

    def _write(self, sheet: str, start_row: int, start_col: int, values: List[List[Any]]) -> None:
        rows = self.tabs.setdefault(sheet, [])
        for offset, new_row in enumerate(values):
            index = start_row + offset
            while len(rows) <= index:
                rows.append([])
            row = rows[index]
            while len(row) < start_col + len(new_row):
                row.append("")
            for column, value in enumerate(new_row):
                row[start_col + column] = value
        if self.after_write is not None:
            self.after_write(sheet, rows)

    def _handle_update(self, range_spec: str, values: List[List[Any]]) -> Dict[str, Any]:
        sheet, start_row, start_col, _end_row, _end_col = self._split_range(range_spec)
        self._write(sheet, start_row, start_col, values)
        return {"updatedRange": range_spec, "updatedRows": len(values)}

    def _handle_append(self, range_spec: str, values: List[List[Any]]) -> Dict[str, Any]:
        sheet, _start_row, _start_col, _end_row, _end_col = self._split_range(range_spec)
        rows = self.tabs.setdefault(sheet, [])
        last = len(rows)
        while last and not any(cell not in ("", None) for cell in rows[last - 1]):
            last -= 1
        del rows[last:]
        self._write(sheet, last, 0, values)
        return {"updates": {"updatedRows": len(values)}}

    def _handle_batch_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        for entry in body.get("data", []):
            sheet, start_row, start_col, _end_row, _end_col = self._split_range(entry["range"])
            self._write(sheet, start_row, start_col, entry["values"])
        return {"totalUpdatedCells": sum(len(entry["values"]) for entry in body.get("data", []))}


async def no_sleep(_delay: float) -> None:
    return None


def make_gateway(service: FakeService, *, drive: Optional[FakeDrive] = None, max_attempts: int = 3) -> SheetsGateway:
    return SheetsGateway("sheet-123", service, drive_service=drive, max_attempts=max_attempts, sleep=no_sleep)


def make_settings(**overrides: Any) -> StoreSettings:
    values: Dict[str, Any] = {"spreadsheet_id": "sheet-123", "admin_emails": ["admin@example.org"]}
    values.update(overrides)
    return StoreSettings(**values)


LIVE_HEADER = [
    "alumniId",
    "slug",
    "name",
    "email",
    "location",
    "bioLong",
    "isPublic",
    "status",
    "updatedAt",
    "lastChangeType",
    "currentHeadshotId",
    "featuredAlbumId",
    "currentUpdateText",
]

CHANGES_HEADER = ["ts", "alumniId", "email", "field", "before", "after", "isUndone"]
