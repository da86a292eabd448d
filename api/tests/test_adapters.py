from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from kindsync.services.adapters.base import AdapterError
from kindsync.services.adapters.foursquare import FoursquareAdapter
from kindsync.services.adapters.hardcover import HardcoverAdapter
from kindsync.services.adapters.http import RateGate
from kindsync.services.adapters.lastfm import LastFmAdapter
from kindsync.services.adapters.listenbrainz import ListenBrainzAdapter
from kindsync.services.adapters.readwise import ReadwiseAdapter
from kindsync.services.adapters.simkl import SimklAdapter
from kindsync.services.adapters.trakt import TraktAdapter


def _fetch(factory, handler, cursor=None, since=None, limit=100):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = factory(client)
            return await adapter.fetch_batch(cursor, since, limit)

    return asyncio.run(_run())


def _listens(*timestamps: int) -> dict:
    return {
        "payload": {
            "listens": [
                {"listened_at": ts, "track_metadata": {"track_name": f"t{ts}", "artist_name": "a"}}
                for ts in timestamps
            ]
        }
    }


def test_listenbrainz_uses_oldest_timestamp_as_next_cursor() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_listens(300, 200, 100))

    batch = _fetch(
        lambda client: ListenBrainzAdapter(token="tok", username="me", client=client, min_interval_seconds=0),
        handler,
        cursor="400",
        limit=3,
    )

    assert batch.next_cursor == "100"
    assert batch.has_more is True
    assert len(batch.items) == 3
    request = seen[0]
    assert request.url.path == "/1/user/me/listens"
    assert request.url.params["max_ts"] == "400"
    assert request.url.params["count"] == "3"
    assert request.headers["Authorization"] == "Token tok"


def test_listenbrainz_stops_at_min_ts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_listens(300, 200))

    batch = _fetch(
        lambda client: ListenBrainzAdapter(token="tok", username="me", client=client, min_interval_seconds=0),
        handler,
        since=datetime.fromtimestamp(200, tz=timezone.utc),
        limit=2,
    )

    assert batch.has_more is False


def test_listenbrainz_short_page_ends_the_walk() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_listens(300))

    batch = _fetch(
        lambda client: ListenBrainzAdapter(token="tok", username="me", client=client, min_interval_seconds=0),
        handler,
        limit=100,
    )

    assert batch.has_more is False
    assert batch.next_cursor == "300"


def test_listenbrainz_resolves_username_from_token() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("validate-token"):
            return httpx.Response(200, json={"valid": True, "user_name": "resolved"})
        return httpx.Response(200, json=_listens())

    batch = _fetch(
        lambda client: ListenBrainzAdapter(token="tok", client=client, min_interval_seconds=0),
        handler,
    )

    assert paths == ["/1/validate-token", "/1/user/resolved/listens"]
    assert batch.items == []
    assert batch.has_more is False


def test_invalid_cursor_raises_adapter_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_listens())

    with pytest.raises(AdapterError, match="invalid cursor"):
        _fetch(
            lambda client: ListenBrainzAdapter(token="tok", username="me", client=client, min_interval_seconds=0),
            handler,
            cursor="yesterday",
        )


def test_http_error_message_is_extracted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "Invalid authorization token."})

    with pytest.raises(AdapterError) as exc_info:
        _fetch(
            lambda client: ListenBrainzAdapter(token="tok", username="me", client=client, min_interval_seconds=0),
            handler,
        )

    assert exc_info.value.status_code == 401
    assert str(exc_info.value) == "listenbrainz: Invalid authorization token."


def test_lastfm_pages_and_skips_now_playing() -> None:
    payload = {
        "recenttracks": {
            "@attr": {"page": "2", "totalPages": "3", "total": "410"},
            "track": [
                {"name": "playing", "@attr": {"nowplaying": "true"}},
                {"name": "one", "date": {"uts": "1714500000"}},
                {"name": "two", "date": {"uts": "1714400000"}},
            ],
        }
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=payload)

    batch = _fetch(
        lambda client: LastFmAdapter(api_key="key", username="me", client=client, min_interval_seconds=0),
        handler,
        cursor="2",
        limit=200,
    )

    assert [item["name"] for item in batch.items] == ["one", "two"]
    assert batch.next_cursor == "3"
    assert batch.has_more is True
    assert batch.total == 410
    assert seen[0].url.params["page"] == "2"
    assert seen[0].url.params["method"] == "user.getRecentTracks"


def test_lastfm_error_body_with_ok_status_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": 6, "message": "User not found"})

    with pytest.raises(AdapterError, match="User not found"):
        _fetch(
            lambda client: LastFmAdapter(api_key="key", username="ghost", client=client, min_interval_seconds=0),
            handler,
        )


def test_trakt_uses_page_count_header() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["trakt-api-key"] == "cid"
        return httpx.Response(
            200,
            json=[{"id": 1, "type": "movie"}],
            headers={"X-Pagination-Page-Count": "1"},
        )

    batch = _fetch(
        lambda client: TraktAdapter(
            source="trakt_movies",
            history_type="movies",
            client_id="cid",
            access_token="at",
            client=client,
            min_interval_seconds=0,
        ),
        handler,
    )

    assert batch.has_more is False
    assert batch.next_cursor == "2"
    assert len(batch.items) == 1


def test_simkl_empty_library_is_an_empty_batch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"null", headers={"Content-Type": "application/json"})

    batch = _fetch(
        lambda client: SimklAdapter(client_id="cid", access_token="at", client=client, min_interval_seconds=0),
        handler,
    )

    assert batch.items == []
    assert batch.has_more is False


def test_simkl_snapshot_honours_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"movies": [{"movie": {"title": f"m{i}"}} for i in range(3)], "shows": [{"show": {"title": "s"}}]},
        )

    batch = _fetch(
        lambda client: SimklAdapter(client_id="cid", access_token="at", client=client, min_interval_seconds=0),
        handler,
        limit=2,
    )

    assert len(batch.items) == 2
    assert all(item["type"] == "movie" for item in batch.items)
    assert batch.has_more is False


def test_simkl_without_limit_returns_the_whole_library() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"movies": [{"movie": {"title": f"m{i}"}} for i in range(150)]})

    batch = _fetch(
        lambda client: SimklAdapter(client_id="cid", access_token="at", client=client, min_interval_seconds=0),
        handler,
        limit=0,
    )

    assert len(batch.items) == 150
    assert batch.total == 150
    assert batch.has_more is False


def test_rate_gate_waits_out_the_interval() -> None:
    now = [100.0]
    slept: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)
        now[0] += seconds

    gate = RateGate(clock=lambda: now[0], sleep=fake_sleep)

    async def _run() -> None:
        await gate.wait("lastfm", 0.2)
        now[0] += 0.05
        await gate.wait("lastfm", 0.2)
        await gate.wait("trakt", 0.3)

    asyncio.run(_run())

    assert slept == [pytest.approx(0.15)]


def test_readwise_walks_page_cursor_and_attaches_highlights() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/highlights/"):
            return httpx.Response(200, json={"results": [{"text": "a"}, {"text": "b", "note": "n"}]})
        if "pageCursor" not in request.url.params:
            return httpx.Response(
                200, json={"count": 2, "results": [{"id": 1, "num_highlights": 2}], "nextPageCursor": "c2"}
            )
        return httpx.Response(200, json={"count": 2, "results": [{"id": 2, "num_highlights": 0}]})

    batch = _fetch(
        lambda client: ReadwiseAdapter(
            source="readwise_books",
            category="books",
            access_token="rw",
            include_highlights=True,
            client=client,
            min_interval_seconds=0,
        ),
        handler,
    )

    assert [item["id"] for item in batch.items] == [1, 2]
    assert batch.items[0]["highlights"] == [{"text": "a", "note": ""}, {"text": "b", "note": "n"}]
    assert "highlights" not in batch.items[1]
    assert batch.has_more is False
    assert batch.total == 2
    assert seen[0].url.params["category"] == "books"
    assert seen[0].headers["Authorization"] == "Token rw"
    assert [request.url.params.get("pageCursor") for request in seen[:2]] == [None, "c2"]


def test_hardcover_graphql_errors_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer hc"
        return httpx.Response(200, json={"errors": [{"message": "invalid token"}]})

    with pytest.raises(AdapterError, match="hardcover: invalid token"):
        _fetch(lambda client: HardcoverAdapter(api_token="hc", client=client, min_interval_seconds=0), handler)


def test_hardcover_drops_books_finished_before_since() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        books = [
            {"id": 1, "finished_at": "2024-01-01"},
            {"id": 2, "finished_at": "2024-06-01"},
            {"id": 3},
        ]
        return httpx.Response(200, json={"data": {"me": [{"user_books": books}]}})

    batch = _fetch(
        lambda client: HardcoverAdapter(api_token="Bearer hc", client=client, min_interval_seconds=0),
        handler,
        since=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )

    assert [item["id"] for item in batch.items] == [2, 3]


def test_foursquare_sends_after_timestamp() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"response": {"checkins": {"count": 1, "items": [{"id": "c1"}]}}})

    batch = _fetch(
        lambda client: FoursquareAdapter(access_token="fs", client=client, min_interval_seconds=0),
        handler,
        since=datetime(2024, 5, 1, tzinfo=timezone.utc),
        limit=500,
    )

    assert [item["id"] for item in batch.items] == ["c1"]
    params = seen[0].url.params
    assert params["afterTimestamp"] == "1714521600"
    assert params["limit"] == "250"
    assert params["oauth_token"] == "fs"


def test_foursquare_pages_with_offset_until_history_is_read() -> None:
    offsets: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        offsets.append(request.url.params["offset"])
        size = min(int(request.url.params["limit"]), 300 - offset)
        items = [{"id": f"c{offset + index}"} for index in range(size)]
        return httpx.Response(200, json={"response": {"checkins": {"count": 300, "items": items}}})

    batch = _fetch(
        lambda client: FoursquareAdapter(access_token="fs", client=client, min_interval_seconds=0),
        handler,
        limit=0,
    )

    assert offsets == ["0", "250"]
    assert len(batch.items) == 300
    assert batch.items[-1]["id"] == "c299"
    assert batch.has_more is False
