from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import quote

from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle, parse_int_cursor
from kindsync.services.adapters.http import ApiClient, expect_dict

MAX_PAGE_SIZE = 100


class ListenBrainzAdapter(ApiClient):
    """Time-cursor pagination: the cursor is the oldest `listened_at` seen so far (`max_ts` of the next call)."""

    source = "listenbrainz"
    base_url = "https://api.listenbrainz.org/1/"
    min_interval_seconds = 1.0
    pagination = PaginationStyle.TIME_CURSOR

    def __init__(self, *, token: str | None, username: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._token = token
        self._username = username

    def is_authenticated(self) -> bool:
        return bool(self._token)

    def default_headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Token {self._token}"}
        return {}

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        count = max(1, min(limit, MAX_PAGE_SIZE))
        max_ts = parse_int_cursor(self.source, cursor, default=0)
        min_ts = int(since.timestamp()) if since is not None else 0

        params: dict[str, Any] = {"count": count}
        if max_ts > 0:
            params["max_ts"] = max_ts
        if min_ts > 0:
            params["min_ts"] = min_ts

        username = await self._resolve_username()
        payload = expect_dict(self.source, await self.get_json(f"user/{quote(username, safe='')}/listens", params))
        body = payload.get("payload")
        listens = body.get("listens") if isinstance(body, dict) else None
        if not isinstance(listens, list):
            raise AdapterError(self.source, "malformed response: missing payload.listens")

        timestamps = [
            listen["listened_at"]
            for listen in listens
            if isinstance(listen, dict) and isinstance(listen.get("listened_at"), int)
        ]
        oldest = min(timestamps) if timestamps else None

        has_more = len(listens) >= count and oldest is not None
        if min_ts > 0 and oldest is not None and oldest <= min_ts:
            has_more = False

        return Batch(
            items=[listen for listen in listens if isinstance(listen, dict)],
            next_cursor=str(oldest) if oldest is not None else None,
            has_more=has_more,
        )

    async def _resolve_username(self) -> str:
        if self._username:
            return self._username
        if not self._token:
            raise AdapterError(self.source, "a username or user token is required")

        payload = expect_dict(self.source, await self.get_json("validate-token"))
        user_name = payload.get("user_name")
        if not payload.get("valid") or not isinstance(user_name, str) or not user_name:
            raise AdapterError(self.source, payload.get("message") or "user token is not valid")
        self._username = user_name
        return user_name
