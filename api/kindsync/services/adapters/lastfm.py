from __future__ import annotations

from datetime import datetime
from typing import Any

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle, parse_int_cursor
from kindsync.services.adapters.http import ApiClient, expect_dict

MAX_PAGE_SIZE = 200


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class LastFmAdapter(ApiClient):
    source = "lastfm"
    base_url = "https://ws.audioscrobbler.com/2.0/"
    min_interval_seconds = 0.2
    pagination = PaginationStyle.PAGE_CURSOR

    def __init__(self, *, api_key: str | None, username: str | None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key
        self._username = username

    def is_authenticated(self) -> bool:
        return bool(self._api_key)

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        if not self._api_key:
            raise AdapterError(self.source, "API key is not configured")
        if not self._username:
            raise AdapterError(self.source, "username is required")

        page = parse_int_cursor(self.source, cursor, default=1)
        params: dict[str, Any] = {
            "method": "user.getRecentTracks",
            "user": self._username,
            "api_key": self._api_key,
            "format": "json",
            "limit": max(1, min(limit, MAX_PAGE_SIZE)),
            "page": page,
            "extended": 1,
        }
        if since is not None:
            params["from"] = int(since.timestamp())

        payload = expect_dict(self.source, await self.get_json("", params))
        # Last.fm reports some failures with a 200 status and an error body.
        if "error" in payload:
            raise AdapterError(self.source, str(payload.get("message") or payload["error"]))

        recent = payload.get("recenttracks")
        if not isinstance(recent, dict):
            raise AdapterError(self.source, "malformed response: missing recenttracks")

        attr = recent.get("@attr") if isinstance(recent.get("@attr"), dict) else {}
        tracks = recent.get("track", [])
        if isinstance(tracks, dict):
            tracks = [tracks]
        if not isinstance(tracks, list):
            raise AdapterError(self.source, "malformed response: track is not a list")

        scrobbles = [track for track in tracks if isinstance(track, dict) and not _is_now_playing(track)]
        total_pages = _as_int(attr.get("totalPages"))

        return Batch(
            items=scrobbles,
            next_cursor=str(page + 1),
            has_more=page < total_pages,
            total=_as_int(attr.get("total")),
        )


def _is_now_playing(track: dict[str, Any]) -> bool:
    attr = track.get("@attr")
    return isinstance(attr, dict) and attr.get("nowplaying") == "true"
