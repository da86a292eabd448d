from __future__ import annotations

from datetime import datetime
from typing import Any

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle
from kindsync.services.adapters.http import ApiClient, expect_dict

MAX_PAGE_SIZE = 1000
CATEGORIES = {"books", "articles", "tweets", "podcasts", "supplementals"}


def _page_size(limit: int) -> int:
    return MAX_PAGE_SIZE if limit <= 0 else min(limit, MAX_PAGE_SIZE)


class ReadwiseAdapter(ApiClient):
    """Snapshot source. Walks `nextPageCursor` internally up to the requested limit, or to the end when it is 0."""

    base_url = "https://readwise.io/api/v2/"
    min_interval_seconds = 0.33
    pagination = PaginationStyle.SNAPSHOT

    def __init__(
        self,
        *,
        source: str,
        category: str,
        access_token: str | None,
        include_highlights: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if category not in CATEGORIES:
            raise ValueError(f"unsupported readwise category: {category}")
        self.source = source
        self._category = category
        self._access_token = access_token
        self._include_highlights = include_highlights

    def is_authenticated(self) -> bool:
        return bool(self._access_token)

    def default_headers(self) -> dict[str, str]:
        if self._access_token:
            return {"Authorization": f"Token {self._access_token}"}
        return {}

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        if not self.is_authenticated():
            raise AdapterError(self.source, "access token is not configured")

        params: dict[str, Any] = {"page_size": _page_size(limit), "category": self._category}
        if since is not None:
            params["updated__gt"] = since.isoformat()

        documents, total = await self._collect("books/", params, limit)
        if self._include_highlights:
            for document in documents:
                highlight_count = document.get("num_highlights")
                if isinstance(highlight_count, int) and highlight_count > 0:
                    document["highlights"] = await self._fetch_highlights(document.get("id"), highlight_count)

        if limit > 0 and total:
            total = min(total, limit)
        return Batch(items=documents, has_more=False, total=total or len(documents))

    async def _fetch_highlights(self, book_id: Any, limit: int) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"page_size": _page_size(limit), "book_id": book_id}
        highlights, _ = await self._collect("highlights/", params, limit)
        return [
            {"text": highlight.get("text") or "", "note": highlight.get("note") or ""}
            for highlight in highlights
        ]

    async def _collect(self, endpoint: str, params: dict[str, Any], limit: int) -> tuple[list[dict[str, Any]], int]:
        collected: list[dict[str, Any]] = []
        total = 0
        next_cursor: str | None = None

        while True:
            page_params = dict(params)
            if next_cursor:
                page_params["pageCursor"] = next_cursor
            payload = expect_dict(self.source, await self.get_json(endpoint, page_params))

            results = payload.get("results")
            if not isinstance(results, list):
                raise AdapterError(self.source, f"malformed response: {endpoint} results missing")
            if not total and isinstance(payload.get("count"), int):
                total = payload["count"]

            for result in results:
                if isinstance(result, dict):
                    collected.append(result)
                    if 0 < limit <= len(collected):
                        return collected, total

            raw_cursor = payload.get("nextPageCursor")
            next_cursor = str(raw_cursor) if raw_cursor else None
            if next_cursor is None:
                return collected, total
