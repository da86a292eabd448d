from __future__ import annotations

from datetime import datetime
from typing import Any

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle
from kindsync.services.adapters.http import ApiClient, expect_dict

READ_BOOKS_QUERY = """
query GetReadingList($status: String!, $limit: Int) {
  me {
    user_books(status: $status, limit: $limit) {
      id
      status
      rating
      started_at
      finished_at
      updated_at
      book {
        id
        title
        slug
        image { url }
        contributions { author { id name } }
      }
      edition { id isbn_13 }
    }
  }
}
"""


class HardcoverAdapter(ApiClient):
    source = "hardcover"
    base_url = "https://api.hardcover.app/v1/graphql"
    min_interval_seconds = 1.0
    pagination = PaginationStyle.SNAPSHOT

    def __init__(self, *, api_token: str | None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_token = api_token

    def is_authenticated(self) -> bool:
        return bool(self._api_token)

    def default_headers(self) -> dict[str, str]:
        if not self._api_token:
            return {}
        token = self._api_token
        if not token.lower().startswith("bearer "):
            token = f"Bearer {token}"
        return {"Authorization": token, "Content-Type": "application/json"}

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        if not self.is_authenticated():
            raise AdapterError(self.source, "API token is not configured")

        variables: dict[str, Any] = {"status": "read"}
        if limit > 0:
            variables["limit"] = limit
        payload = expect_dict(
            self.source,
            await self.post_json("", {"query": READ_BOOKS_QUERY, "variables": variables}),
        )
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            raise AdapterError(self.source, str(first.get("message") or "GraphQL error"))

        data = payload.get("data")
        me = data.get("me") if isinstance(data, dict) else None
        # Hardcover returns `me` as a single-element list.
        if isinstance(me, list):
            me = me[0] if me else {}
        if not isinstance(me, dict):
            raise AdapterError(self.source, "malformed response: missing data.me")

        user_books = me.get("user_books") or []
        if not isinstance(user_books, list):
            raise AdapterError(self.source, "malformed response: user_books is not a list")

        items = [entry for entry in user_books if isinstance(entry, dict)]
        if since is not None:
            items = [entry for entry in items if not _finished_before(entry, since)]
        if limit > 0:
            items = items[:limit]
        return Batch(items=items, has_more=False, total=len(items))


def _finished_before(entry: dict[str, Any], since: datetime) -> bool:
    raw = entry.get("finished_at")
    if not isinstance(raw, str) or not raw:
        return False
    try:
        finished = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return False
    if finished.tzinfo is None:
        finished = finished.replace(tzinfo=since.tzinfo)
    return finished < since
