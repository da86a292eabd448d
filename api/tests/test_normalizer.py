from __future__ import annotations

from datetime import datetime, timezone

import pytest

from kindsync.schemas.items import CheckinItem, ListenItem, ReadItem, WatchItem
from kindsync.services.normalizer import (
    IgnoredEvent,
    ItemError,
    WebhookContext,
    normalize_jellyfin,
    normalize_listenbrainz_webhook,
    normalize_plex,
    normalize_record,
    normalize_trakt_webhook,
    parse_timestamp,
)
from kindsync.services.sources import SourceId

RECEIVED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_parse_timestamp_accepts_unix_and_iso() -> None:
    assert parse_timestamp(1714564800) == RECEIVED
    assert parse_timestamp("1714564800") == RECEIVED
    assert parse_timestamp("2024-05-01T12:00:00Z") == RECEIVED
    assert parse_timestamp("2024-05-01T14:00:00+02:00") == RECEIVED
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


@pytest.mark.parametrize("value", [1_714_500_000_000, "1714500000000", float("inf")])
def test_parse_timestamp_rejects_out_of_range_epochs(value) -> None:
    with pytest.raises(ItemError, match="timestamp out of range"):
        parse_timestamp(value)


def test_listenbrainz_record_maps_to_listen() -> None:
    item = normalize_record(
        SourceId.LISTENBRAINZ,
        {
            "listened_at": 1714564800,
            "track_metadata": {
                "track_name": "Windowlicker",
                "artist_name": "Aphex Twin",
                "release_name": "Windowlicker",
                "additional_info": {"recording_mbid": "abc"},
            },
        },
    )

    assert isinstance(item, ListenItem)
    assert item.track == "Windowlicker"
    assert item.artist == "Aphex Twin"
    assert item.mbid == "abc"
    assert item.occurred_at == RECEIVED


def test_lastfm_record_prefers_largest_image() -> None:
    item = normalize_record(
        SourceId.LASTFM,
        {
            "name": "Teardrop",
            "artist": {"name": "Massive Attack"},
            "album": {"#text": "Mezzanine"},
            "date": {"uts": "1714564800"},
            "image": [
                {"size": "small", "#text": "https://img/s.jpg"},
                {"size": "extralarge", "#text": "https://img/xl.jpg"},
            ],
        },
    )

    assert item.cover == "https://img/xl.jpg"
    assert item.listened_at == RECEIVED


def test_trakt_episode_record() -> None:
    item = normalize_record(
        SourceId.TRAKT_SHOWS,
        {
            "type": "episode",
            "watched_at": "2024-05-01T12:00:00.000Z",
            "episode": {"title": "Pilot", "season": 1, "number": 1, "ids": {"trakt": 42}},
            "show": {"title": "Severance", "year": 2022},
        },
    )

    assert isinstance(item, WatchItem)
    assert item.media_type == "episode"
    assert item.show == "Severance"
    assert item.trakt_id == "42"


def test_foursquare_record_builds_address_from_parts() -> None:
    item = normalize_record(
        SourceId.FOURSQUARE,
        {
            "createdAt": 1714564800,
            "venue": {"name": "Cafe", "location": {"formattedAddress": ["1 Main St", "Town"], "lat": 1.5, "lng": 2}},
        },
    )

    assert isinstance(item, CheckinItem)
    assert item.address == "1 Main St, Town"
    assert item.longitude == 2.0


def test_readwise_book_keeps_highlights() -> None:
    item = normalize_record(
        SourceId.READWISE_BOOKS,
        {
            "title": "Dune",
            "author": "Frank Herbert",
            "num_highlights": 2,
            "highlights": [{"text": "Fear is the mind-killer."}, {"text": ""}],
        },
    )

    assert isinstance(item, ReadItem)
    assert item.highlight_count == 2
    assert [highlight.text for highlight in item.highlights] == ["Fear is the mind-killer."]


def test_missing_required_field_is_an_item_error() -> None:
    with pytest.raises(ItemError, match="missing title"):
        normalize_record(SourceId.HARDCOVER, {"book": {}})
    with pytest.raises(ItemError, match="not an object"):
        normalize_record(SourceId.SIMKL, ["movie"])


def test_plex_scrobble_builds_poster_url() -> None:
    context = WebhookContext(received_at=RECEIVED, plex_url="http://plex:32400/", plex_token="pt")
    items = normalize_plex(
        {
            "event": "media.scrobble",
            "Metadata": {
                "type": "movie",
                "title": "Arrival",
                "year": 2016,
                "thumb": "/library/metadata/1/thumb",
                "Guid": [{"id": "imdb://tt2543164"}, {"id": "tmdb://329865"}],
            },
        },
        context,
    )

    assert len(items) == 1
    movie = items[0]
    assert movie.imdb_id == "tt2543164"
    assert movie.poster == "http://plex:32400/library/metadata/1/thumb?X-Plex-Token=pt"
    assert movie.watched_at == RECEIVED


def test_plex_non_scrobble_is_ignored() -> None:
    with pytest.raises(IgnoredEvent, match="media.play"):
        normalize_plex({"event": "media.play"}, WebhookContext(received_at=RECEIVED))


def test_jellyfin_requires_completed_playback() -> None:
    context = WebhookContext(received_at=RECEIVED)
    payload = {"NotificationType": "PlaybackStop", "ItemType": "Episode", "Name": "Pilot", "SeriesName": "Show"}

    with pytest.raises(IgnoredEvent, match="not completed"):
        normalize_jellyfin({**payload, "PlayedToCompletion": False}, context)

    items = normalize_jellyfin({**payload, "PlayedToCompletion": True, "SeasonNumber": 2}, context)
    assert items[0].season == 2
    assert items[0].episode == 0


def test_trakt_webhook_uses_payload_time() -> None:
    items = normalize_trakt_webhook(
        {"action": "scrobble", "watched_at": "2024-04-30T10:00:00Z", "movie": {"title": "Heat", "year": 1995}},
        WebhookContext(received_at=RECEIVED),
    )

    assert items[0].watched_at == datetime(2024, 4, 30, 10, 0, tzinfo=timezone.utc)

    with pytest.raises(IgnoredEvent):
        normalize_trakt_webhook({"action": "checkin"}, WebhookContext(received_at=RECEIVED))


def test_listenbrainz_webhook_yields_every_listen() -> None:
    items = normalize_listenbrainz_webhook(
        {
            "listen_type": "single",
            "payload": [
                {"listened_at": 1714564800, "track_metadata": {"track_name": "One", "artist_name": "A"}},
                {"track_metadata": {"track_name": "Two", "artist_name": "B"}},
            ],
        },
        WebhookContext(received_at=RECEIVED),
    )

    assert [item.track for item in items] == ["One", "Two"]
    assert items[1].listened_at == RECEIVED
