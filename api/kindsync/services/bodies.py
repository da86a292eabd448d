"""Content bodies and metadata fields for each item kind."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from html import escape
from typing import Any
from urllib.parse import quote

from kindsync.schemas.items import (
    BookmarkItem,
    CheckinItem,
    Highlight,
    Item,
    ItemKind,
    ListenItem,
    NoteItem,
    ReadItem,
    WatchItem,
)

KINDLE_CARD_URL = "https://read.amazon.com/kp/card?asin={}"
MUSIC_SEARCH_URLS = {
    "spotify": ("Spotify", "https://open.spotify.com/search/{}"),
    "apple_music": ("Apple Music", "https://music.apple.com/us/search?term={}"),
    "youtube": ("YouTube", "https://www.youtube.com/results?search_query={}"),
    "bandcamp": ("Bandcamp", "https://bandcamp.com/search?q={}"),
    "soundcloud": ("SoundCloud", "https://soundcloud.com/search?q={}"),
}


def music_service_url(service: str, track: str | None, artist: str | None) -> str | None:
    if not track or not artist or service not in MUSIC_SEARCH_URLS:
        return None
    _, template = MUSIC_SEARCH_URLS[service]
    return template.format(quote(f"{track} {artist}", safe=""))


def display_title(item: Item) -> str:
    if isinstance(item, WatchItem) and item.media_type == "episode" and item.show:
        return f"Watched {item.show} S{item.season or 0:02d}E{item.episode or 0:02d}"
    return item.display_title


def _paragraph(text: str, css_class: str | None = None) -> str:
    if css_class:
        return f'<p class="{css_class}">{text}</p>'
    return f"<p>{text}</p>"


def _highlight_blocks(highlights: list[Highlight]) -> list[str]:
    blocks: list[str] = []
    for highlight in highlights:
        if not highlight.text:
            continue
        blocks.append(f"<blockquote><p>{escape(highlight.text)}</p></blockquote>")
        if highlight.note:
            blocks.append(_paragraph(f"<em>{escape(highlight.note)}</em>", "highlight-note"))
    return blocks


# Bodies


def _listen_body(item: ListenItem, embed_source: str) -> str:
    if item.is_podcast:
        parts = [_paragraph(f'Listened to "{escape(item.episode_title or "")}" from {escape(item.show_name or "")}.')]
        if item.highlights:
            parts.append("<h3>Highlights from this episode</h3>")
            parts.extend(_highlight_blocks(item.highlights))
            if item.source_url:
                parts.append(_paragraph(f'<a href="{escape(item.source_url)}">View highlights on Snipd</a>'))
        return "\n\n".join(parts)

    parts = [_paragraph(f'Listened to "{escape(item.track or "")}" by {escape(item.artist or "")}.')]
    url = music_service_url(embed_source, item.track, item.artist)
    if url:
        label, _ = MUSIC_SEARCH_URLS[embed_source]
        parts.append(_paragraph(f'<a href="{escape(url)}">Find on {label}</a>'))
    return "\n\n".join(parts)


def _watch_body(item: WatchItem, _: str) -> str:
    if item.media_type == "episode" and item.show:
        return _paragraph(f'Watched {escape(item.show)} "{escape(item.title or "")}".')
    return _paragraph(f'Watched "{escape(item.title or "")}".')


def _read_body(item: ReadItem, _: str) -> str:
    parts = [_paragraph(f'Finished reading "{escape(item.title or "")}" by {escape(item.author or "")}.')]
    if item.asin:
        card = KINDLE_CARD_URL.format(quote(item.asin, safe=""))
        parts.append(_paragraph(f'<a href="{escape(card)}">{escape(card)}</a>'))
    if item.highlights:
        inner = "".join(_highlight_blocks(item.highlights))
        parts.append(f"<details><summary>Highlights ({len(item.highlights)})</summary>{inner}</details>")
    return "\n\n".join(parts)


def _checkin_body(item: CheckinItem, _: str) -> str:
    parts = [_paragraph(f"Checked in at {escape(item.venue_name or 'Unknown Venue')}.")]
    if item.shout:
        parts.append(_paragraph(escape(item.shout)))
    return "\n\n".join(parts)


def _bookmark_body(item: BookmarkItem, _: str) -> str:
    title = escape(item.title or "Untitled")
    if item.source_url:
        return _paragraph(f'Bookmarked "<a href="{escape(item.source_url)}">{title}</a>".')
    return _paragraph(f'Bookmarked "{title}".')


def _note_body(item: NoteItem, _: str) -> str:
    return _paragraph(escape(item.body or ""))


BODY_BUILDERS: Mapping[ItemKind, Callable[[Any, str], str]] = {
    ItemKind.LISTEN: _listen_body,
    ItemKind.WATCH: _watch_body,
    ItemKind.READ: _read_body,
    ItemKind.CHECKIN: _checkin_body,
    ItemKind.BOOKMARK: _bookmark_body,
    ItemKind.NOTE: _note_body,
}


def build_body(item: Item, embed_source: str = "none") -> str:
    return BODY_BUILDERS[ItemKind(item.kind)](item, embed_source)


# Metadata fields


def _listen_fields(item: ListenItem, embed_source: str) -> dict[str, Any]:
    if item.is_podcast:
        return {
            "cite_name": item.episode_title,
            "cite_author": item.show_name,
            "cite_photo": item.cover,
            "cite_url": item.source_url,
            "listen_track": item.episode_title,
            "listen_artist": item.show_name,
            "listen_album": item.show_name,
            "listen_cover": item.cover,
            "listen_url": item.source_url,
            "highlight_count": len(item.highlights),
        }
    return {
        "cite_name": item.track,
        "cite_author": item.artist,
        "listen_track": item.track,
        "listen_artist": item.artist,
        "listen_album": item.album,
        "listen_cover": item.cover,
        "listen_mbid": item.mbid,
        "listen_url": music_service_url(embed_source, item.track, item.artist),
    }


def _watch_fields(item: WatchItem, _: str) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "cite_name": item.title,
        "cite_photo": item.poster,
        "watch_title": item.title,
        "watch_year": item.year,
        "watch_type": item.media_type,
        "watch_poster": item.poster,
        "watch_tmdb_id": item.tmdb_id,
        "watch_imdb_id": item.imdb_id,
        "watch_trakt_id": item.trakt_id,
        "watch_tvdb_id": item.tvdb_id,
        "watch_status": "watched",
    }
    if item.media_type == "episode":
        fields["watch_show"] = item.show
        fields["watch_season"] = item.season
        fields["watch_episode"] = item.episode
    return fields


def _read_fields(item: ReadItem, _: str) -> dict[str, Any]:
    return {
        "cite_name": item.title,
        "cite_author": item.author,
        "cite_photo": item.cover,
        "cite_url": item.source_url,
        "read_title": item.title,
        "read_author": item.author,
        "read_cover": item.cover,
        "read_isbn": item.isbn or item.asin,
        "read_asin": item.asin,
        "read_status": "finished",
        "highlight_count": item.highlight_count,
    }


def _checkin_fields(item: CheckinItem, _: str) -> dict[str, Any]:
    return {
        "checkin_name": item.venue_name,
        "checkin_address": item.address,
        "checkin_venue_id": item.venue_id,
        "checkin_shout": item.shout,
        "geo_latitude": item.latitude,
        "geo_longitude": item.longitude,
    }


def _bookmark_fields(item: BookmarkItem, _: str) -> dict[str, Any]:
    return {
        "cite_name": item.title or "Untitled",
        "cite_author": item.author,
        "cite_url": item.source_url,
        "cite_photo": item.cover,
        "highlight_count": item.highlight_count,
    }


def _note_fields(item: NoteItem, _: str) -> dict[str, Any]:
    return {
        "cite_name": item.title or "Untitled",
        "cite_url": item.source_url,
        "highlight_count": item.highlight_count,
    }


FIELD_BUILDERS: Mapping[ItemKind, Callable[[Any, str], dict[str, Any]]] = {
    ItemKind.LISTEN: _listen_fields,
    ItemKind.WATCH: _watch_fields,
    ItemKind.READ: _read_fields,
    ItemKind.CHECKIN: _checkin_fields,
    ItemKind.BOOKMARK: _bookmark_fields,
    ItemKind.NOTE: _note_fields,
}


def is_empty(value: Any) -> bool:
    """Only None and the empty string count as empty; 0 and False are real values."""
    return value is None or value == ""


def build_fields(item: Item, embed_source: str = "none") -> dict[str, Any]:
    fields = FIELD_BUILDERS[ItemKind(item.kind)](item, embed_source)
    fields["source"] = item.source
    return {key: value for key, value in fields.items() if not is_empty(value)}
