from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import List

import httplib2
import pytest
from googleapiclient.errors import HttpError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from alumnistore import retry
from alumnistore.errors import QuotaExceededError, SchemaError, SheetsOperationError


def _http_error(status: int, message: str) -> HttpError:
    resp = httplib2.Response({"status": status})
    return HttpError(resp, message.encode("utf-8"))


class _Flaky:
    def __init__(self, errors: List[BaseException], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class _Sleeper:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (_http_error(429, '{"error": {"message": "Quota exceeded for quota metric"}}'), retry.QUOTA),
        (_http_error(503, "backend unavailable"), retry.TRANSIENT),
        (_http_error(429, '{"error": {"status": "rateLimitExceeded"}}'), retry.TRANSIENT),
        (ConnectionResetError("ECONNRESET"), retry.TRANSIENT),
        (socket.timeout("timed out"), retry.TRANSIENT),
        (_http_error(400, "Unable to parse range"), retry.FATAL),
        (SchemaError("Missing column"), retry.FATAL),
    ],
)
def test_classify_error(exc: BaseException, expected: str) -> None:
    assert retry.classify_error(exc) == expected


def test_backoff_delay_doubles_per_attempt() -> None:
    assert retry.backoff_delay(1, 250) == pytest.approx(0.25)
    assert retry.backoff_delay(2, 250) == pytest.approx(0.5)
    assert retry.backoff_delay(3, 250) == pytest.approx(1.0)
    with pytest.raises(ValueError):
        retry.backoff_delay(0)


@pytest.mark.asyncio
async def test_transient_errors_are_retried_until_success() -> None:
    operation = _Flaky([ConnectionResetError("reset"), _http_error(502, "bad gateway")])
    sleeper = _Sleeper()

    result = await retry.with_retry(operation, "Sheets get 'Profile-Live'!A1:ZZ", 3, 100, sleep=sleeper)

    assert result == "ok"
    assert operation.calls == 3
    assert sleeper.delays == [pytest.approx(0.1), pytest.approx(0.2)]


@pytest.mark.asyncio
async def test_transient_errors_exhaust_into_labeled_error() -> None:
    operation = _Flaky([ConnectionResetError("reset")] * 5)

    with pytest.raises(SheetsOperationError) as excinfo:
        await retry.with_retry(operation, "Sheets append Profile-Changes", 2, 10, sleep=_Sleeper())

    assert operation.calls == 2
    assert str(excinfo.value).startswith("Sheets append Profile-Changes failed:")
    assert not isinstance(excinfo.value, QuotaExceededError)


@pytest.mark.asyncio
async def test_quota_errors_are_not_retried() -> None:
    operation = _Flaky([_http_error(429, "Quota exceeded for quota metric 'Read requests'")])
    sleeper = _Sleeper()

    with pytest.raises(QuotaExceededError) as excinfo:
        await retry.with_retry(operation, "Sheets get Profile-Media", 5, 10, sleep=sleeper)

    assert operation.calls == 1
    assert sleeper.delays == []
    assert excinfo.value.retry_after == 60


@pytest.mark.asyncio
async def test_fatal_errors_surface_immediately() -> None:
    operation = _Flaky([_http_error(403, "The caller does not have permission")])

    with pytest.raises(SheetsOperationError) as excinfo:
        await retry.with_retry(operation, "Sheets update Profile-Live row 4", 3, 10, sleep=_Sleeper())

    assert operation.calls == 1
    assert "Sheets update Profile-Live row 4 failed" in str(excinfo.value)
