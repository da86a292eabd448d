from __future__ import annotations

from datetime import datetime
from typing import Any

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle
from kindsync.services.adapters.http import ApiClient, expect_dict

API_VERSION = "20231001"
MAX_PAGE_SIZE = 250


class FoursquareAdapter(ApiClient):
    source = "foursquare"
    base_url = "https://api.foursquare.com/v2/"
    min_interval_seconds = 0.5
    pagination = PaginationStyle.SNAPSHOT

    def __init__(self, *, access_token: str | None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._access_token = access_token

    def is_authenticated(self) -> bool:
        return bool(self._access_token)

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        """Pages through check-ins with `offset` until the history (or `limit`) is exhausted."""
        if not self.is_authenticated():
            raise AdapterError(self.source, "foursquare account is not connected")

        items: list[dict[str, Any]] = []
        offset = 0
        while True:
            page_size = MAX_PAGE_SIZE if limit <= 0 else min(limit - len(items), MAX_PAGE_SIZE)
            params: dict[str, Any] = {
                "oauth_token": self._access_token,
                "v": API_VERSION,
                "limit": page_size,
                "offset": offset,
                "sort": "newestfirst",
            }
            if since is not None:
                params["afterTimestamp"] = int(since.timestamp())

            entries, count = await self._checkins_page(params)
            items.extend(entry for entry in entries if isinstance(entry, dict))
            offset += len(entries)
            if len(entries) < page_size or (count is not None and offset >= count) or 0 < limit <= len(items):
                break

        return Batch(items=items, has_more=False, total=len(items))

    async def _checkins_page(self, params: dict[str, Any]) -> tuple[list[Any], int | None]:
        payload = expect_dict(self.source, await self.get_json("users/self/checkins", params))
        response = payload.get("response")
        checkins = response.get("checkins") if isinstance(response, dict) else None
        if not isinstance(checkins, dict):
            raise AdapterError(self.source, "malformed response: missing response.checkins")

        entries = checkins.get("items") or []
        if not isinstance(entries, list):
            raise AdapterError(self.source, "malformed response: checkins.items is not a list")
        count = checkins.get("count")
        return entries, count if isinstance(count, int) else None
