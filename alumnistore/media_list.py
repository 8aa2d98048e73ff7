"""Read endpoint contract for listing a record's media.

:class:`MediaListService` is framework-agnostic: ``handle`` takes the query
parameters as a mapping and returns a :class:`Response` (status, JSON body,
headers) that any HTTP layer can serialise.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from alumnistore import schema
from alumnistore.cache import StaleFallbackCache, cache_key
from alumnistore.errors import QuotaExceededError, StoreError
from alumnistore.media import list_media, read_media
from alumnistore.settings import StoreSettings

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100
LIST_TTL_SECONDS = 15.0
_CACHE_HEADERS = {"Cache-Control": "public, max-age=10, stale-while-revalidate=60"}


@dataclass
class Response:
    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def _int_param(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class MediaListQuery:
    record_id: str
    kind: str = "all"
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    include_drive: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "MediaListQuery":
        limit = _int_param(params.get("limit"), DEFAULT_LIMIT)
        offset = _int_param(params.get("offset"), 0)
        return cls(
            record_id=str(params.get("alumniId") or "").strip().lower(),
            kind=str(params.get("kind") or "all").strip().lower(),
            limit=min(max(limit, 1), MAX_LIMIT),
            offset=max(offset, 0),
            include_drive=str(params.get("includeDrive") or "false").strip().lower() in {"true", "1"},
        )

    @property
    def key(self) -> str:
        return cache_key(
            schema.SCHEMA_VERSION,
            self.record_id,
            self.kind,
            f"l={self.limit}",
            f"o={self.offset}",
            f"d={1 if self.include_drive else 0}",
        )


class MediaListService:
    def __init__(self, gateway, settings: StoreSettings, cache: Optional[StaleFallbackCache] = None) -> None:
        self._gateway = gateway
        self._settings = settings
        self._cache = cache if cache is not None else StaleFallbackCache(LIST_TTL_SECONDS)

    async def handle(self, params: Mapping[str, Any]) -> Response:
        query = MediaListQuery.from_params(params)
        if not query.record_id:
            return Response(400, {"error": "alumniId required"})
        if query.kind != "all" and query.kind not in schema.MEDIA_KINDS:
            return Response(400, {"error": "kind invalid"})

        try:
            result = await self._cache.get(query.key, lambda: self._load(query))
        except QuotaExceededError as exc:
            return Response(
                429,
                {"error": str(exc), "retryAfterSeconds": exc.retry_after},
                {"Retry-After": str(exc.retry_after)},
            )
        except Exception as exc:
            logger.exception("Media list failed for %s", query.record_id)
            return Response(500, {"error": str(exc) or "server error"})

        body = dict(result.data)
        if result.stale:
            body["stale"] = True
            body["warning"] = result.warning
        return Response(200, body, dict(_CACHE_HEADERS))

    async def _load(self, query: MediaListQuery) -> Dict[str, Any]:
        assets = await read_media(self._gateway, self._settings.media_tab)
        page, total = list_media(assets, query.record_id, query.kind, query.limit, query.offset)
        items = [asset.to_json() for asset in page]
        if query.include_drive:
            for item in items:
                if not item["fileId"]:
                    continue
                try:
                    meta = await self._gateway.drive_file(item["fileId"])
                except StoreError as exc:
                    logger.warning("Drive metadata unavailable for %s: %s", item["fileId"], exc)
                    continue
                item["drive"] = {
                    "name": meta.get("name"),
                    "webViewLink": meta.get("webViewLink"),
                    "thumbnailLink": meta.get("thumbnailLink"),
                }

        body: Dict[str, Any] = {
            "ok": True,
            "items": items,
            "total": total,
            "offset": query.offset,
            "limit": query.limit,
        }
        if query.offset + len(items) < total:
            body["nextOffset"] = query.offset + len(items)
        return body


__all__ = ["MediaListQuery", "MediaListService", "Response"]
