from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from kindsync.schemas.items import (
    BookmarkItem,
    CheckinItem,
    Highlight,
    Item,
    ListenItem,
    NoteItem,
    ReadItem,
    WatchItem,
)
from kindsync.services.sources import SourceId

SIMKL_POSTER_URL = "https://simkl.in/posters/{}_m.jpg"
LASTFM_IMAGE_SIZES = ("mega", "extralarge", "large", "medium", "small")


class ItemError(Exception):
    """One record could not be turned into an Item. Isolated to that record."""


class IgnoredEvent(Exception):
    """A webhook event that is valid but not a completed activity."""


@dataclass(slots=True)
class WebhookContext:
    received_at: datetime
    plex_url: str | None = None
    plex_token: str | None = None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _from_epoch(value: int | float) -> datetime:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ItemError(f"timestamp out of range: {value}") from exc


def parse_timestamp(value: Any) -> datetime | None:
    """Accepts unix seconds (int or numeric string) and ISO-8601 strings. Always returns UTC.

    Raises ItemError for numeric values no datetime can hold, such as millisecond epochs.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value) if value > 0 else None
    if not isinstance(value, str) or not value.strip():
        return None

    raw = value.strip()
    if raw.isdigit():
        return _from_epoch(int(raw))
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _highlights(raw: Any) -> list[Highlight]:
    if not isinstance(raw, list):
        return []
    return [
        Highlight(text=_as_text(entry.get("text")) or "", note=_as_text(entry.get("note")) or "")
        for entry in raw
        if isinstance(entry, dict) and _as_text(entry.get("text"))
    ]


def _build(factory: Callable[..., Item], **fields: Any) -> Item:
    try:
        return factory(**fields)
    except ValidationError as exc:
        raise ItemError(f"invalid {fields.get('source', 'item')} record: {exc.errors()[0].get('msg')}") from exc


def _require(value: str | None, source: str, field_name: str) -> str:
    if not value:
        raise ItemError(f"{source} record is missing {field_name}")
    return value


# Batch sources


def _listenbrainz(raw: dict[str, Any]) -> Item:
    metadata = _as_dict(raw.get("track_metadata"))
    additional = _as_dict(metadata.get("additional_info"))
    return _build(
        ListenItem,
        source="listenbrainz",
        track=_require(_as_text(metadata.get("track_name")), "listenbrainz", "track_name"),
        artist=_as_text(metadata.get("artist_name")),
        album=_as_text(metadata.get("release_name")),
        listened_at=parse_timestamp(raw.get("listened_at")),
        mbid=_as_text(additional.get("recording_mbid")),
        source_url=_as_text(additional.get("origin_url")),
        raw=raw,
    )


def _lastfm_image(images: Any) -> str | None:
    if not isinstance(images, list):
        return None
    by_size = {
        entry.get("size"): _as_text(entry.get("#text"))
        for entry in images
        if isinstance(entry, dict)
    }
    for size in LASTFM_IMAGE_SIZES:
        if by_size.get(size):
            return by_size[size]
    return None


def _lastfm(raw: dict[str, Any]) -> Item:
    artist = _as_dict(raw.get("artist"))
    album = _as_dict(raw.get("album"))
    return _build(
        ListenItem,
        source="lastfm",
        track=_require(_as_text(raw.get("name")), "lastfm", "name"),
        artist=_as_text(artist.get("name")) or _as_text(artist.get("#text")),
        album=_as_text(album.get("#text")),
        listened_at=parse_timestamp(_as_dict(raw.get("date")).get("uts")),
        mbid=_as_text(raw.get("mbid")),
        cover=_lastfm_image(raw.get("image")),
        source_url=_as_text(raw.get("url")),
        raw=raw,
    )


def _trakt(raw: dict[str, Any], source: str) -> Item:
    watched_at = parse_timestamp(raw.get("watched_at"))
    if raw.get("type") == "episode" or "episode" in raw:
        episode = _as_dict(raw.get("episode"))
        show = _as_dict(raw.get("show"))
        ids = _as_dict(episode.get("ids"))
        return _build(
            WatchItem,
            source=source,
            media_type="episode",
            title=_require(_as_text(episode.get("title")) or _as_text(show.get("title")), source, "title"),
            show=_as_text(show.get("title")),
            year=_as_int(show.get("year")),
            season=_as_int(episode.get("season")),
            episode=_as_int(episode.get("number")),
            watched_at=watched_at,
            trakt_id=_as_text(ids.get("trakt")),
            tvdb_id=_as_text(ids.get("tvdb")),
            tmdb_id=_as_text(ids.get("tmdb")),
            imdb_id=_as_text(ids.get("imdb")),
            raw=raw,
        )

    movie = _as_dict(raw.get("movie"))
    ids = _as_dict(movie.get("ids"))
    return _build(
        WatchItem,
        source=source,
        media_type="movie",
        title=_require(_as_text(movie.get("title")), source, "title"),
        year=_as_int(movie.get("year")),
        watched_at=watched_at,
        trakt_id=_as_text(ids.get("trakt")),
        tmdb_id=_as_text(ids.get("tmdb")),
        imdb_id=_as_text(ids.get("imdb")),
        raw=raw,
    )


def _simkl_poster(poster: Any) -> str | None:
    value = _as_text(poster)
    if not value:
        return None
    if value.startswith("http"):
        return value
    return SIMKL_POSTER_URL.format(value)


def _simkl(raw: dict[str, Any]) -> Item:
    media_type = raw.get("type") if raw.get("type") in {"movie", "show", "anime"} else "movie"
    media = _as_dict(raw.get("movie")) or _as_dict(raw.get("show"))
    ids = _as_dict(media.get("ids"))
    return _build(
        WatchItem,
        source="simkl",
        media_type=media_type,
        title=_require(_as_text(media.get("title")), "simkl", "title"),
        year=_as_int(media.get("year")),
        watched_at=parse_timestamp(raw.get("last_watched_at")),
        poster=_simkl_poster(media.get("poster")),
        tmdb_id=_as_text(ids.get("tmdb")),
        imdb_id=_as_text(ids.get("imdb")),
        raw=raw,
    )


def _hardcover(raw: dict[str, Any]) -> Item:
    book = _as_dict(raw.get("book"))
    edition = _as_dict(raw.get("edition"))
    author = None
    for contribution in book.get("contributions") or []:
        if isinstance(contribution, dict):
            author = _as_text(_as_dict(contribution.get("author")).get("name"))
            if author:
                break
    return _build(
        ReadItem,
        source="hardcover",
        title=_require(_as_text(book.get("title")), "hardcover", "title"),
        author=author,
        finished_at=parse_timestamp(raw.get("finished_at")),
        cover=_as_text(_as_dict(book.get("image")).get("url")),
        isbn=_as_text(edition.get("isbn_13")),
        raw=raw,
    )


def _foursquare(raw: dict[str, Any]) -> Item:
    venue = _as_dict(raw.get("venue"))
    location = _as_dict(venue.get("location"))
    address = _as_text(location.get("address"))
    if address is None and isinstance(location.get("formattedAddress"), list):
        address = ", ".join(part for part in location["formattedAddress"] if isinstance(part, str)) or None
    return _build(
        CheckinItem,
        source="foursquare",
        venue_name=_require(_as_text(venue.get("name")), "foursquare", "venue name"),
        venue_id=_as_text(venue.get("id")),
        address=address,
        latitude=_as_float(location.get("lat")),
        longitude=_as_float(location.get("lng")),
        timestamp=parse_timestamp(raw.get("createdAt")),
        shout=_as_text(raw.get("shout")),
        raw=raw,
    )


def _readwise_date(raw: dict[str, Any]) -> datetime | None:
    return parse_timestamp(raw.get("last_highlight_at")) or parse_timestamp(raw.get("updated"))


def _readwise_book(raw: dict[str, Any]) -> Item:
    return _build(
        ReadItem,
        source="readwise_books",
        title=_require(_as_text(raw.get("title")), "readwise_books", "title"),
        author=_as_text(raw.get("author")),
        finished_at=_readwise_date(raw),
        cover=_as_text(raw.get("cover_image_url")),
        asin=_as_text(raw.get("asin")),
        source_url=_as_text(raw.get("source_url")),
        highlight_count=_as_int(raw.get("num_highlights")) or 0,
        highlights=_highlights(raw.get("highlights")),
        raw=raw,
    )


def _readwise_bookmark(raw: dict[str, Any], source: str) -> Item:
    return _build(
        BookmarkItem,
        source=source,
        source_url=_require(_as_text(raw.get("source_url")), source, "source_url"),
        title=_as_text(raw.get("title")),
        author=_as_text(raw.get("author")),
        cover=_as_text(raw.get("cover_image_url")),
        saved_at=_readwise_date(raw),
        highlight_count=_as_int(raw.get("num_highlights")) or 0,
        raw=raw,
    )


def _readwise_podcast(raw: dict[str, Any]) -> Item:
    return _build(
        ListenItem,
        source="readwise_podcasts",
        episode_title=_require(_as_text(raw.get("title")), "readwise_podcasts", "title"),
        show_name=_as_text(raw.get("author")) or "",
        cover=_as_text(raw.get("cover_image_url")),
        source_url=_as_text(raw.get("source_url")),
        listened_at=_readwise_date(raw),
        highlights=_highlights(raw.get("highlights")),
        raw=raw,
    )


def _readwise_note(raw: dict[str, Any]) -> Item:
    return _build(
        NoteItem,
        source="readwise_supplementals",
        title=_require(_as_text(raw.get("title")), "readwise_supplementals", "title"),
        body=_as_text(raw.get("document_note")),
        source_url=_as_text(raw.get("source_url")),
        noted_at=_readwise_date(raw),
        highlight_count=_as_int(raw.get("num_highlights")) or 0,
        raw=raw,
    )


BATCH_MAPPERS: Mapping[SourceId, Callable[[dict[str, Any]], Item]] = {
    SourceId.LISTENBRAINZ: _listenbrainz,
    SourceId.LASTFM: _lastfm,
    SourceId.TRAKT_MOVIES: lambda raw: _trakt(raw, "trakt_movies"),
    SourceId.TRAKT_SHOWS: lambda raw: _trakt(raw, "trakt_shows"),
    SourceId.SIMKL: _simkl,
    SourceId.HARDCOVER: _hardcover,
    SourceId.FOURSQUARE: _foursquare,
    SourceId.READWISE_BOOKS: _readwise_book,
    SourceId.READWISE_ARTICLES: lambda raw: _readwise_bookmark(raw, "readwise_articles"),
    SourceId.READWISE_PODCASTS: _readwise_podcast,
    SourceId.READWISE_TWEETS: lambda raw: _readwise_bookmark(raw, "readwise_tweets"),
    SourceId.READWISE_SUPPLEMENTALS: _readwise_note,
}


def normalize_record(source: SourceId, raw: Any) -> Item:
    if not isinstance(raw, dict):
        raise ItemError(f"{source.value} record is not an object")
    return BATCH_MAPPERS[source](raw)


# Webhook payloads


def _guid_ids(metadata: dict[str, Any]) -> dict[str, str]:
    ids: dict[str, str] = {}
    for guid in metadata.get("Guid") or []:
        raw_id = _as_text(_as_dict(guid).get("id"))
        if not raw_id or "://" not in raw_id:
            continue
        scheme, _, value = raw_id.partition("://")
        if scheme in {"imdb", "tmdb", "tvdb"} and value:
            ids[f"{scheme}_id"] = value
    return ids


def _plex_thumb(thumb: Any, context: WebhookContext) -> str | None:
    path = _as_text(thumb)
    if not path or not context.plex_url or not context.plex_token:
        return None
    return f"{context.plex_url.rstrip('/')}{path}?X-Plex-Token={context.plex_token}"


def normalize_plex(payload: dict[str, Any], context: WebhookContext) -> list[Item]:
    event = payload.get("event")
    if event != "media.scrobble":
        raise IgnoredEvent(f"Event type not processed: {event or 'unknown'}")

    metadata = _as_dict(payload.get("Metadata"))
    media_type = metadata.get("type")
    extra = {"plex_key": metadata.get("key"), "user": _as_dict(payload.get("Account")).get("title")}

    if media_type == "movie":
        ids = _guid_ids(metadata)
        return [
            _build(
                WatchItem,
                source="plex",
                media_type="movie",
                title=_require(_as_text(metadata.get("title")), "plex", "title"),
                year=_as_int(metadata.get("year")),
                watched_at=context.received_at,
                poster=_plex_thumb(metadata.get("thumb"), context),
                imdb_id=ids.get("imdb_id"),
                tmdb_id=ids.get("tmdb_id"),
                raw=extra,
            )
        ]
    if media_type == "episode":
        ids = _guid_ids(metadata)
        return [
            _build(
                WatchItem,
                source="plex",
                media_type="episode",
                title=_require(_as_text(metadata.get("title")), "plex", "title"),
                show=_as_text(metadata.get("grandparentTitle")),
                season=_as_int(metadata.get("parentIndex")) or 0,
                episode=_as_int(metadata.get("index")) or 0,
                watched_at=context.received_at,
                poster=_plex_thumb(metadata.get("grandparentThumb"), context),
                tvdb_id=ids.get("tvdb_id"),
                tmdb_id=ids.get("tmdb_id"),
                raw=extra,
            )
        ]
    if media_type == "track":
        return [
            _build(
                ListenItem,
                source="plex",
                track=_require(_as_text(metadata.get("title")), "plex", "title"),
                artist=_as_text(metadata.get("grandparentTitle")),
                album=_as_text(metadata.get("parentTitle")),
                listened_at=context.received_at,
                cover=_plex_thumb(metadata.get("parentThumb"), context),
                raw=extra,
            )
        ]
    raise IgnoredEvent(f"Media type not supported: {media_type or 'unknown'}")


def normalize_jellyfin(payload: dict[str, Any], context: WebhookContext) -> list[Item]:
    notification_type = payload.get("NotificationType")
    if notification_type != "PlaybackStop":
        raise IgnoredEvent(f"Event type not processed: {notification_type or 'unknown'}")
    if payload.get("PlayedToCompletion") not in (True, "true", "True"):
        raise IgnoredEvent("Playback not completed")

    item_type = payload.get("ItemType")
    extra = {"jellyfin_id": payload.get("ItemId"), "user": payload.get("NotificationUsername")}

    if item_type == "Movie":
        return [
            _build(
                WatchItem,
                source="jellyfin",
                media_type="movie",
                title=_require(_as_text(payload.get("Name")), "jellyfin", "Name"),
                year=_as_int(payload.get("Year")),
                watched_at=context.received_at,
                imdb_id=_as_text(payload.get("Provider_imdb")),
                tmdb_id=_as_text(payload.get("Provider_tmdb")),
                raw=extra,
            )
        ]
    if item_type == "Episode":
        return [
            _build(
                WatchItem,
                source="jellyfin",
                media_type="episode",
                title=_require(_as_text(payload.get("Name")), "jellyfin", "Name"),
                show=_as_text(payload.get("SeriesName")),
                season=_as_int(payload.get("SeasonNumber")) or 0,
                episode=_as_int(payload.get("EpisodeNumber")) or 0,
                watched_at=context.received_at,
                tvdb_id=_as_text(payload.get("Provider_tvdb")),
                raw=extra,
            )
        ]
    if item_type == "Audio":
        artists = payload.get("Artists")
        artist = _as_text(artists[0]) if isinstance(artists, list) and artists else None
        return [
            _build(
                ListenItem,
                source="jellyfin",
                track=_require(_as_text(payload.get("Name")), "jellyfin", "Name"),
                artist=artist,
                album=_as_text(payload.get("Album")),
                listened_at=context.received_at,
                raw=extra,
            )
        ]
    raise IgnoredEvent(f"Item type not supported: {item_type or 'unknown'}")


def normalize_trakt_webhook(payload: dict[str, Any], context: WebhookContext) -> list[Item]:
    action = payload.get("action")
    if action not in {"scrobble", "watch"}:
        raise IgnoredEvent(f"Action type not processed: {action or 'unknown'}")

    watched_at = parse_timestamp(payload.get("watched_at")) or context.received_at
    if isinstance(payload.get("movie"), dict):
        movie = payload["movie"]
        ids = _as_dict(movie.get("ids"))
        return [
            _build(
                WatchItem,
                source="trakt",
                media_type="movie",
                title=_require(_as_text(movie.get("title")), "trakt", "title"),
                year=_as_int(movie.get("year")),
                watched_at=watched_at,
                trakt_id=_as_text(ids.get("trakt")),
                imdb_id=_as_text(ids.get("imdb")),
                tmdb_id=_as_text(ids.get("tmdb")),
            )
        ]
    if isinstance(payload.get("episode"), dict):
        episode = payload["episode"]
        show = _as_dict(payload.get("show"))
        ids = _as_dict(episode.get("ids"))
        return [
            _build(
                WatchItem,
                source="trakt",
                media_type="episode",
                title=_require(_as_text(episode.get("title")), "trakt", "title"),
                show=_as_text(show.get("title")),
                season=_as_int(episode.get("season")) or 0,
                episode=_as_int(episode.get("number")) or 0,
                watched_at=watched_at,
                trakt_id=_as_text(ids.get("trakt")),
                tvdb_id=_as_text(ids.get("tvdb")),
            )
        ]
    raise IgnoredEvent("No movie or episode in payload")


def normalize_listenbrainz_webhook(payload: dict[str, Any], context: WebhookContext) -> list[Item]:
    listen_type = payload.get("listen_type")
    if listen_type not in {"single", "playing_now"}:
        raise IgnoredEvent(f"Listen type not processed: {listen_type or 'unknown'}")

    listens = payload.get("payload")
    if not isinstance(listens, list) or not listens:
        raise IgnoredEvent("No listens in payload")

    items: list[Item] = []
    for listen in listens:
        listen = _as_dict(listen)
        metadata = _as_dict(listen.get("track_metadata"))
        additional = _as_dict(metadata.get("additional_info"))
        items.append(
            _build(
                ListenItem,
                source="listenbrainz",
                track=_require(_as_text(metadata.get("track_name")), "listenbrainz", "track_name"),
                artist=_as_text(metadata.get("artist_name")),
                album=_as_text(metadata.get("release_name")),
                listened_at=parse_timestamp(listen.get("listened_at")) or context.received_at,
                mbid=_as_text(additional.get("recording_mbid")),
            )
        )
    return items
