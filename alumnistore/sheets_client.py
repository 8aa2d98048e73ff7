"""Google Sheets gateway with robust A1 range handling.

This module centralises every direct interaction with the Google Sheets (and
Drive metadata) API used by the record store.  It provides a small surface
that the rest of the package relies on without needing to know about HTTP
requests or googleapiclient internals:

* ``get`` / ``update`` / ``append`` / ``batch_update`` are coroutines.  The
  blocking ``execute()`` call runs in a worker thread and every call is
  wrapped by :func:`alumnistore.retry.with_retry` under a readable label.
* Worksheet titles are always quoted according to A1 rules and column
  references are calculated with a dedicated helper, so "Unable to parse
  range" errors do not happen for titles such as ``Profile-Live``.
* All failures surface as :mod:`alumnistore.errors` subclasses.

httplib2 is not thread-safe, so the service is built with a request builder
that gives each request its own authorised ``Http`` instance.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, MutableSequence, Optional, Sequence

import google_auth_httplib2
import httplib2
from googleapiclient.discovery import build
from googleapiclient.http import HttpRequest

from alumnistore.google_credentials import (
    credentials_from_payload,
    load_service_account_data,
    parse_service_account_json,
)
from alumnistore.retry import DEFAULT_BASE_DELAY_MS, DEFAULT_MAX_ATTEMPTS, with_retry
from alumnistore.settings import SettingsError, StoreSettings

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 120
VALUE_INPUT_OPTION = "RAW"
UNFORMATTED = "UNFORMATTED_VALUE"
LAST_COLUMN = "ZZ"


def column_letter(index: int) -> str:
    """Return the A1 column letters for 1-based ``index``."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if len(safe) >= 2 and safe[0] == safe[-1] and safe[0] in {"'", '"'}:
        safe = safe[1:-1].replace("''", "'")
    if not safe:
        raise ValueError("Worksheet title must not be empty")
    return "'" + safe.replace("'", "''") + "'"


def a1_range(title: str, range_spec: str) -> str:
    return f"{quote_title(title)}!{range_spec}"


def table_range(title: str, header_row: int = 1) -> str:
    """Return a range covering the header row and every data row below it."""

    if header_row < 1:
        raise ValueError("Header row must be >= 1")
    return a1_range(title, f"A{header_row}:{LAST_COLUMN}")


def row_range(title: str, row_number: int, *, columns: int) -> str:
    """Return the exact range of 1-based ``row_number`` spanning ``columns``."""

    if row_number < 1:
        raise ValueError("Row index must be >= 1")
    last = column_letter(max(1, columns))
    return a1_range(title, f"A{row_number}:{last}{row_number}")


def cell_range(title: str, row_number: int, column_index: int) -> str:
    """Return the range of a single cell; ``column_index`` is 0-based."""

    if row_number < 1:
        raise ValueError("Row index must be >= 1")
    column = column_letter(column_index + 1)
    return a1_range(title, f"{column}{row_number}:{column}{row_number}")


def _request_builder(credentials) -> Callable[..., HttpRequest]:
    def build_request(http, *args, **kwargs):
        authorised = google_auth_httplib2.AuthorizedHttp(
            credentials, http=httplib2.Http(timeout=HTTP_TIMEOUT_SECONDS)
        )
        return HttpRequest(authorised, *args, **kwargs)

    return build_request


def _build_api(api: str, version: str, credentials):
    http = google_auth_httplib2.AuthorizedHttp(
        credentials, http=httplib2.Http(timeout=HTTP_TIMEOUT_SECONDS)
    )
    return build(
        api,
        version,
        http=http,
        requestBuilder=_request_builder(credentials),
        cache_discovery=False,
    )


def _load_credentials(settings: StoreSettings):
    if settings.credentials_json:
        payload = parse_service_account_json(settings.credentials_json)
    elif settings.credentials_path:
        payload = load_service_account_data(settings.credentials_file())
    else:
        raise SettingsError("Either GCP_SA_JSON or a credentials path must be configured.")
    return credentials_from_payload(payload)


class SheetsGateway:
    """Single authenticated entry point to one spreadsheet."""

    def __init__(
        self,
        spreadsheet_id: str,
        service,
        *,
        drive_service=None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if not spreadsheet_id:
            raise SettingsError("A spreadsheet id is required.")
        self.spreadsheet_id = spreadsheet_id
        self._service = service
        self._drive = drive_service
        self._max_attempts = max_attempts
        self._base_delay_ms = base_delay_ms
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get(
        self,
        range_a1: str,
        *,
        label: str = "",
        value_render_option: str = UNFORMATTED,
    ) -> List[List[Any]]:
        """Return the raw values for ``range_a1`` (possibly ragged rows)."""

        def request():
            return (
                self._service.spreadsheets()
                .values()
                .get(
                    spreadsheetId=self.spreadsheet_id,
                    range=range_a1,
                    valueRenderOption=value_render_option,
                )
            )

        result = await self._call(request, label or f"Sheets get {range_a1}")
        values = result.get("values", []) if isinstance(result, Mapping) else []
        return [list(row) for row in values]

    async def update(self, range_a1: str, rows: Sequence[Sequence[Any]], *, label: str = "") -> Dict[str, Any]:
        """Overwrite ``range_a1`` with ``rows``."""

        body = {"values": [list(row) for row in rows]}

        def request():
            return (
                self._service.spreadsheets()
                .values()
                .update(
                    spreadsheetId=self.spreadsheet_id,
                    range=range_a1,
                    valueInputOption=VALUE_INPUT_OPTION,
                    body=body,
                )
            )

        return await self._call(request, label or f"Sheets update {range_a1}")

    async def append(self, range_a1: str, rows: Sequence[Sequence[Any]], *, label: str = "") -> Dict[str, Any]:
        """Append ``rows`` below the table found in ``range_a1``."""

        body = {"values": [list(row) for row in rows]}

        def request():
            return (
                self._service.spreadsheets()
                .values()
                .append(
                    spreadsheetId=self.spreadsheet_id,
                    range=range_a1,
                    valueInputOption=VALUE_INPUT_OPTION,
                    insertDataOption="INSERT_ROWS",
                    body=body,
                )
            )

        return await self._call(request, label or f"Sheets append {range_a1}")

    async def batch_update(self, data: Sequence[Mapping[str, Any]], *, label: str = "") -> Dict[str, Any]:
        """Write several ranges in one ``values.batchUpdate`` request."""

        body = {
            "valueInputOption": VALUE_INPUT_OPTION,
            "data": [{"range": entry["range"], "values": [list(row) for row in entry["values"]]} for entry in data],
        }

        def request():
            return (
                self._service.spreadsheets()
                .values()
                .batchUpdate(spreadsheetId=self.spreadsheet_id, body=body)
            )

        return await self._call(request, label or f"Sheets batchUpdate ({len(data)} ranges)")

    async def drive_file(self, file_id: str, *, fields: str = "id,name,webViewLink,thumbnailLink") -> Dict[str, Any]:
        """Return Drive metadata for ``file_id``."""

        if self._drive is None:
            raise SettingsError("Drive metadata requested but no Drive service is configured.")

        def request():
            return self._drive.files().get(fileId=file_id, fields=fields, supportsAllDrives=True)

        return await self._call(request, f"Drive get {file_id}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _call(self, build_request: Callable[[], Any], label: str) -> Dict[str, Any]:
        async def operation():
            request = build_request()
            return await asyncio.to_thread(request.execute)

        result = await with_retry(
            operation,
            label,
            self._max_attempts,
            self._base_delay_ms,
            sleep=self._sleep,
        )
        logger.debug("%s ok", label)
        return result if isinstance(result, dict) else {}


_GATEWAY: Optional[SheetsGateway] = None


def build_gateway(settings: StoreSettings) -> SheetsGateway:
    """Construct an authenticated gateway from ``settings``."""

    credentials = _load_credentials(settings)
    return SheetsGateway(
        settings.spreadsheet_id,
        _build_api("sheets", "v4", credentials),
        drive_service=_build_api("drive", "v3", credentials),
        max_attempts=settings.retry_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
    )


def get_gateway(settings: StoreSettings) -> SheetsGateway:
    """Return the process-wide gateway, constructing it on first use."""

    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = build_gateway(settings)
    return _GATEWAY


__all__ = [
    "SheetsGateway",
    "a1_range",
    "build_gateway",
    "cell_range",
    "column_letter",
    "get_gateway",
    "quote_title",
    "row_range",
    "table_range",
]
