from __future__ import annotations

from datetime import datetime
from typing import Any

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle
from kindsync.services.adapters.http import ApiClient, expect_dict

SECTION_TYPES = {"movies": "movie", "shows": "show", "anime": "anime"}


class SimklAdapter(ApiClient):
    source = "simkl"
    base_url = "https://api.simkl.com/"
    min_interval_seconds = 0.6
    pagination = PaginationStyle.SNAPSHOT

    def __init__(self, *, client_id: str | None, access_token: str | None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id
        self._access_token = access_token

    def is_authenticated(self) -> bool:
        return bool(self._client_id and self._access_token)

    def default_headers(self) -> dict[str, str]:
        headers = {"simkl-api-key": self._client_id or ""}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        if not self.is_authenticated():
            raise AdapterError(self.source, "simkl account is not connected")

        params: dict[str, Any] = {"extended": "full"}
        if since is not None:
            params["date_from"] = since.isoformat()

        payload = await self.get_json("sync/all-items/", params)
        # An empty library comes back as null.
        if payload is None:
            return Batch()
        payload = expect_dict(self.source, payload)

        items: list[dict[str, Any]] = []
        for section, media_type in SECTION_TYPES.items():
            entries = payload.get(section) or []
            if not isinstance(entries, list):
                raise AdapterError(self.source, f"malformed response: {section} is not a list")
            for entry in entries:
                if isinstance(entry, dict):
                    items.append({**entry, "type": media_type})

        if limit > 0:
            items = items[:limit]
        return Batch(items=items, has_more=False, total=len(items))
