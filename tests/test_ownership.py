from __future__ import annotations

import httplib2
import pytest
from googleapiclient.errors import HttpError

from sheets_fakes import CHANGES_HEADER, FakeService, make_gateway, make_settings

from alumnistore.errors import QuotaExceededError
from alumnistore.ownership import ensure_alias, is_admin, normalize_email, owned_by, resolve_owner_record_id

LIVE = "Profile-Live"
ALIASES = "Profile-Aliases"
CHANGES = "Profile-Changes"


def _service(**tabs) -> FakeService:
    base = {
        LIVE: [["alumniId", "name", "email", "backupGmail"], ["jane-doe", "Jane", "jane@example.org", ""]],
        ALIASES: [["email", "alumniId"]],
        CHANGES: [CHANGES_HEADER],
    }
    base.update(tabs)
    return FakeService(base)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (" Jane.Doe+news@GoogleMail.com ", "janedoe@gmail.com"),
        ("j.doe@example.org", "j.doe@example.org"),
        ("", ""),
    ],
)
def test_normalize_email(raw: str, expected: str) -> None:
    assert normalize_email(raw) == expected


def test_is_admin_and_owned_by() -> None:
    assert is_admin("Admin@Example.org", ["admin@example.org"])
    assert not is_admin("", ["admin@example.org"])
    assert owned_by("jane-doe", " Jane-Doe ")
    assert not owned_by("", "jane-doe")


@pytest.mark.asyncio
async def test_resolves_from_any_live_identity_column() -> None:
    service = _service(
        **{LIVE: [["alumniId", "email", "backupGmail"], ["jane-doe", "", "jane.doe@gmail.com"]]}
    )

    owner = await resolve_owner_record_id(make_gateway(service), "JaneDoe+x@gmail.com", make_settings())

    assert owner == "jane-doe"
    assert service.count("get") == 1


@pytest.mark.asyncio
async def test_falls_back_to_aliases_then_changes() -> None:
    service = _service(
        **{
            ALIASES: [["email", "alumniId"], ["alias@example.org", "jane-doe"]],
            CHANGES: [
                CHANGES_HEADER,
                ["2024-01-01T00:00:00.000Z", "old-record", "editor@example.org", "bio", "", "x"],
                ["2024-01-02T00:00:00.000Z", "new-record", "editor@example.org", "bio", "", "y"],
            ],
        }
    )
    gateway = make_gateway(service)
    settings = make_settings()

    assert await resolve_owner_record_id(gateway, "alias@example.org", settings) == "jane-doe"
    assert await resolve_owner_record_id(gateway, "editor@example.org", settings) == "new-record"
    assert await resolve_owner_record_id(gateway, "nobody@example.org", settings) == ""


@pytest.mark.asyncio
async def test_quota_on_alias_tab_propagates() -> None:
    service = _service()
    quota = HttpError(httplib2.Response({"status": 429}), b"Quota exceeded for quota metric 'Read requests'")
    original = service._handle_get

    def failing_get(range_spec):
        if "Profile-Aliases" in range_spec:
            raise quota
        return original(range_spec)

    service._handle_get = failing_get

    with pytest.raises(QuotaExceededError):
        await resolve_owner_record_id(make_gateway(service), "someone@example.org", make_settings())


@pytest.mark.asyncio
async def test_ensure_alias_appends_once_and_writes_missing_header() -> None:
    service = _service(**{ALIASES: []})
    gateway = make_gateway(service)

    assert await ensure_alias(gateway, "Jane.Doe@gmail.com", "Jane-Doe", ALIASES) is True
    assert service.rows(ALIASES) == [["email", "alumniId"], ["janedoe@gmail.com", "jane-doe"]]
    assert await ensure_alias(gateway, "janedoe@gmail.com", "jane-doe", ALIASES) is False
    assert service.count("append") == 1
