from __future__ import annotations

import httplib2
import pytest
from googleapiclient.errors import HttpError

from sheets_fakes import FakeService, make_gateway

from alumnistore.errors import QuotaExceededError, SheetsOperationError
from alumnistore.settings import SettingsError
from alumnistore.sheets_client import (
    SheetsGateway,
    a1_range,
    cell_range,
    column_letter,
    quote_title,
    row_range,
    table_range,
)


@pytest.mark.parametrize("index, letters", [(1, "A"), (26, "Z"), (27, "AA"), (52, "AZ"), (702, "ZZ"), (703, "AAA")])
def test_column_letter(index: int, letters: str) -> None:
    assert column_letter(index) == letters


def test_titles_are_always_quoted() -> None:
    assert quote_title("Profile-Live") == "'Profile-Live'"
    assert quote_title("'Profile-Live'") == "'Profile-Live'"
    assert quote_title("Ada's Tab") == "'Ada''s Tab'"
    with pytest.raises(ValueError):
        quote_title("  ")


def test_range_helpers() -> None:
    assert a1_range("Profile-Live", "A1") == "'Profile-Live'!A1"
    assert table_range("Profile-Live") == "'Profile-Live'!A1:ZZ"
    assert table_range("Profile-Live", header_row=3) == "'Profile-Live'!A3:ZZ"
    assert row_range("Profile-Live", 7, columns=28) == "'Profile-Live'!A7:AB7"
    assert cell_range("Profile-Media", 4, 8) == "'Profile-Media'!I4:I4"


def test_gateway_requires_spreadsheet_id() -> None:
    with pytest.raises(SettingsError):
        SheetsGateway("", FakeService())


@pytest.mark.asyncio
async def test_get_returns_ragged_rows() -> None:
    service = FakeService({"Profile-Live": [["alumniId", "name", ""], ["jane-doe"]]})

    rows = await make_gateway(service).get(table_range("Profile-Live"))

    assert rows == [["alumniId", "name"], ["jane-doe"]]


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    service = FakeService({"Profile-Live": [["alumniId"]]})
    service.failures.append(HttpError(httplib2.Response({"status": 503}), b"backendError"))

    rows = await make_gateway(service).get(table_range("Profile-Live"))

    assert rows == [["alumniId"]]
    assert service.count("get") == 1


@pytest.mark.asyncio
async def test_quota_and_exhausted_failures_are_labeled() -> None:
    service = FakeService()
    gateway = make_gateway(service, max_attempts=2)

    service.failures.append(HttpError(httplib2.Response({"status": 429}), b"Quota exceeded for quota metric"))
    with pytest.raises(QuotaExceededError):
        await gateway.append(table_range("Profile-Changes"), [["x"]], label="Sheets append Profile-Changes")

    service.failures.extend([ConnectionResetError("reset"), ConnectionResetError("reset")])
    with pytest.raises(SheetsOperationError, match="Sheets update 'Profile-Live'!A2:B2 failed"):
        await gateway.update("'Profile-Live'!A2:B2", [["a", "b"]])


@pytest.mark.asyncio
async def test_batch_update_writes_every_range_in_one_call() -> None:
    service = FakeService({"Profile-Media": [["isFeatured"], ["TRUE"], [""]]})

    await make_gateway(service).batch_update(
        [
            {"range": "'Profile-Media'!A2:A2", "values": [["FALSE"]]},
            {"range": "'Profile-Media'!A3:A3", "values": [["TRUE"]]},
        ]
    )

    assert service.count("batchUpdate") == 1
    assert service.rows("Profile-Media") == [["isFeatured"], ["FALSE"], ["TRUE"]]
