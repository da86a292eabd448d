from __future__ import annotations

from datetime import datetime
from typing import Any

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle, parse_int_cursor
from kindsync.services.adapters.http import ApiClient, expect_list

MAX_PAGE_SIZE = 100
HISTORY_TYPES = {"movies", "episodes"}


def _header_int(headers: Any, name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class TraktAdapter(ApiClient):
    base_url = "https://api.trakt.tv/"
    min_interval_seconds = 0.3
    pagination = PaginationStyle.PAGE_CURSOR

    def __init__(
        self,
        *,
        source: str,
        history_type: str,
        client_id: str | None,
        access_token: str | None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if history_type not in HISTORY_TYPES:
            raise ValueError(f"unsupported trakt history type: {history_type}")
        self.source = source
        self._history_type = history_type
        self._client_id = client_id
        self._access_token = access_token

    def is_authenticated(self) -> bool:
        return bool(self._client_id and self._access_token)

    def default_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "trakt-api-version": "2",
            "trakt-api-key": self._client_id or "",
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        if not self.is_authenticated():
            raise AdapterError(self.source, "trakt account is not connected")

        page = parse_int_cursor(self.source, cursor, default=1)
        per_page = max(1, min(limit, MAX_PAGE_SIZE))
        params: dict[str, Any] = {"page": page, "limit": per_page}
        if since is not None:
            params["start_at"] = since.isoformat()

        response = await self.request("GET", f"users/me/history/{self._history_type}", params=params)
        entries = expect_list(self.source, self._decode(response))
        items = [entry for entry in entries if isinstance(entry, dict)]

        page_count = _header_int(response.headers, "X-Pagination-Page-Count")
        if page_count is not None:
            has_more = page < page_count
        else:
            has_more = len(items) >= per_page

        return Batch(
            items=items,
            next_cursor=str(page + 1),
            has_more=has_more,
            total=_header_int(response.headers, "X-Pagination-Item-Count") or 0,
        )
