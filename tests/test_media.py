from __future__ import annotations

from typing import Any, List

import pytest

from sheets_fakes import CHANGES_HEADER, LIVE_HEADER, FakeService, make_gateway, make_settings

from alumnistore import schema
from alumnistore.errors import ForbiddenError, RecordNotFoundError
from alumnistore.media import (
    MediaAsset,
    feature_media,
    list_media,
    read_media,
    record_upload,
    set_exclusive_flag,
    to_iso_or_empty,
)

MEDIA = "Profile-Media"
LIVE = "Profile-Live"
CHANGES = "Profile-Changes"
HEADER = list(schema.MEDIA_HEADER)


def _media_row(record_id: str, kind: str, file_id: str, *, current: Any = "", featured: Any = "", **extra: Any) -> List[Any]:
    values = {
        "alumniId": record_id,
        "kind": kind,
        "fileId": file_id,
        "isCurrent": current,
        "isFeatured": featured,
    }
    values.update(extra)
    return [values.get(name, "") for name in HEADER]


def _flags(service: FakeService, column: str) -> List[Any]:
    index = HEADER.index(column)
    return [row[index] if index < len(row) else "" for row in service.rows(MEDIA)[1:]]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-03-01T10:00:00Z", "2024-03-01T10:00:00Z"),
        ("2024-03-01T10:00:00.123+02:00", "2024-03-01T08:00:00Z"),
        (45352.5, "2024-03-01T12:00:00Z"),
        ("03/01/2024", "2024-03-01T00:00:00Z"),
        ("not a date", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_to_iso_or_empty(value, expected) -> None:
    assert to_iso_or_empty(value) == expected


@pytest.mark.asyncio
async def test_exclusive_flag_with_no_flags_set() -> None:
    service = FakeService(
        {MEDIA: [HEADER, _media_row("jane-doe", "album", "f1"), _media_row("jane-doe", "album", "f2")]}
    )

    written = await set_exclusive_flag(make_gateway(service), "jane-doe", "album", "f2", MEDIA)

    assert written == 1
    assert service.count("batchUpdate") == 1
    assert _flags(service, "isFeatured") == ["", "TRUE"]


@pytest.mark.asyncio
async def test_exclusive_flag_with_one_other_flag_set() -> None:
    service = FakeService(
        {MEDIA: [HEADER, _media_row("jane-doe", "album", "f1", featured=True), _media_row("jane-doe", "album", "f2")]}
    )

    written = await set_exclusive_flag(make_gateway(service), "jane-doe", "album", "f2", MEDIA)

    assert written == 2
    assert _flags(service, "isFeatured") == ["FALSE", "TRUE"]


@pytest.mark.asyncio
async def test_exclusive_flag_repairs_three_flags_and_leaves_other_groups() -> None:
    service = FakeService(
        {
            MEDIA: [
                HEADER,
                _media_row("jane-doe", "headshot", "h1", current="TRUE"),
                _media_row("jane-doe", "headshot", "h2", current="yes"),
                _media_row("john-roe", "headshot", "h9", current="TRUE"),
                _media_row("jane-doe", "headshot", "h3", current=True),
                _media_row("jane-doe", "album", "a1", featured="TRUE"),
            ]
        }
    )

    written = await set_exclusive_flag(make_gateway(service), "Jane-Doe", "headshot", "h2", MEDIA)

    assert written == 3
    assert service.count("batchUpdate") == 1
    assert _flags(service, "isCurrent") == ["FALSE", "TRUE", "TRUE", "FALSE", ""]
    assert _flags(service, "isFeatured")[4] == "TRUE"


@pytest.mark.asyncio
async def test_exclusive_flag_is_a_noop_when_consistent() -> None:
    service = FakeService({MEDIA: [HEADER, _media_row("jane-doe", "reel", "r1", featured="TRUE")]})

    assert await set_exclusive_flag(make_gateway(service), "jane-doe", "reel", "r1", MEDIA) == 0
    assert service.writes() == []


@pytest.mark.asyncio
async def test_exclusive_flag_target_must_exist() -> None:
    service = FakeService({MEDIA: [HEADER, _media_row("jane-doe", "reel", "r1")]})

    with pytest.raises(RecordNotFoundError):
        await set_exclusive_flag(make_gateway(service), "jane-doe", "reel", "missing", MEDIA)
    assert service.writes() == []


@pytest.mark.asyncio
async def test_record_upload_appends_and_features_new_asset() -> None:
    service = FakeService({MEDIA: [HEADER, _media_row("jane-doe", "event", "e1", featured="TRUE")]})
    asset = MediaAsset(record_id="Jane-Doe", kind="event", file_id="e2", uploaded_by="jane@example.org")

    saved = await record_upload(make_gateway(service), asset, MEDIA)

    assert saved.is_featured
    assert saved.uploaded_at
    assert len(service.rows(MEDIA)) == 3
    assert _flags(service, "isFeatured") == ["FALSE", "TRUE"]


@pytest.mark.asyncio
async def test_feature_media_points_live_row_and_checks_owner() -> None:
    live_row = ["jane-doe", "jane-doe", "Jane", "jane@example.org", "", "", "", "approved", "", "", "", "", ""]
    service = FakeService(
        {
            LIVE: [LIVE_HEADER, live_row],
            MEDIA: [HEADER, _media_row("jane-doe", "album", "a1"), _media_row("jane-doe", "album", "a2")],
            CHANGES: [CHANGES_HEADER],
            "Profile-Aliases": [["email", "alumniId"]],
        }
    )
    gateway = make_gateway(service)
    settings = make_settings()

    with pytest.raises(ForbiddenError):
        await feature_media(gateway, settings, "jane-doe", "album", "a2", identity="mallory@example.org")
    assert service.writes() == []

    result = await feature_media(gateway, settings, "jane-doe", "album", "a2", identity="jane@example.org")

    assert result.changed_fields == ["featuredAlbumId"]
    row = dict(zip(LIVE_HEADER, service.rows(LIVE)[1]))
    assert row["featuredAlbumId"] == "a2"
    assert row["status"] == "needs_review"
    assert row["lastChangeType"] == "media"
    assert row["updatedAt"]
    assert _flags(service, "isFeatured") == ["", "TRUE"]


def test_list_media_orders_filters_and_pages() -> None:
    assets = [
        MediaAsset("jane-doe", "album", file_id="a", uploaded_at="2024-01-01T00:00:00Z", sort_index="2"),
        MediaAsset("jane-doe", "album", file_id="b", uploaded_at="2024-02-01T00:00:00Z"),
        MediaAsset("jane-doe", "album", file_id="c", uploaded_at="2024-01-01T00:00:00Z", sort_index="1"),
        MediaAsset("jane-doe", "album", file_id="d", uploaded_at="2024-01-01T00:00:00Z", sort_index="1"),
        MediaAsset("jane-doe", "reel", file_id="r", uploaded_at="2024-03-01T00:00:00Z"),
        MediaAsset("john-roe", "album", file_id="x", uploaded_at="2024-03-01T00:00:00Z"),
    ]

    page, total = list_media(assets, "jane-doe", "album", limit=3, offset=0)
    assert total == 4
    assert [asset.file_id for asset in page] == ["b", "d", "c"]

    page, total = list_media(assets, "jane-doe", "all", limit=2, offset=4)
    assert total == 5
    assert [asset.file_id for asset in page] == ["a"]


@pytest.mark.asyncio
async def test_read_media_parses_flags_and_dates() -> None:
    service = FakeService(
        {MEDIA: [HEADER, _media_row("Jane-Doe", "Album", "a1", featured=True, uploadedAt=45352.5), ["", "album"]]}
    )

    assets = await read_media(make_gateway(service), MEDIA)

    assert len(assets) == 1
    assert assets[0].record_id == "jane-doe"
    assert assets[0].kind == "album"
    assert assets[0].is_featured is True
    assert assets[0].uploaded_at == "2024-03-01T12:00:00Z"
    assert assets[0].row_number == 2


@pytest.mark.asyncio
async def test_record_upload_flags_the_new_row_when_the_link_already_exists() -> None:
    service = FakeService(
        {
            MEDIA: [
                HEADER,
                _media_row("jane-doe", "reel", "", externalUrl="https://youtu.be/x", uploadedAt="2024-01-01T00:00:00Z"),
                _media_row("jane-doe", "reel", "", featured="TRUE", externalUrl="https://youtu.be/y"),
            ]
        }
    )
    asset = MediaAsset(
        record_id="jane-doe",
        kind="reel",
        external_url="https://youtu.be/x",
        uploaded_at="2024-03-01T00:00:00Z",
    )

    await record_upload(make_gateway(service), asset, MEDIA)

    assert _flags(service, "isFeatured") == ["", "FALSE", "TRUE"]
    uploaded_at = service.rows(MEDIA)[3][HEADER.index("uploadedAt")]
    assert uploaded_at == "2024-03-01T00:00:00Z"
