from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import httpx

from kindsync.core.config import Settings
from kindsync.schemas.items import ItemKind
from kindsync.services.adapters.base import PaginationStyle, SourceAdapter
from kindsync.services.adapters.foursquare import FoursquareAdapter
from kindsync.services.adapters.hardcover import HardcoverAdapter
from kindsync.services.adapters.http import RateGate
from kindsync.services.adapters.lastfm import LastFmAdapter
from kindsync.services.adapters.listenbrainz import ListenBrainzAdapter
from kindsync.services.adapters.readwise import ReadwiseAdapter
from kindsync.services.adapters.simkl import SimklAdapter
from kindsync.services.adapters.trakt import TraktAdapter


class SourceId(str, Enum):
    LISTENBRAINZ = "listenbrainz"
    LASTFM = "lastfm"
    TRAKT_MOVIES = "trakt_movies"
    TRAKT_SHOWS = "trakt_shows"
    SIMKL = "simkl"
    HARDCOVER = "hardcover"
    FOURSQUARE = "foursquare"
    READWISE_BOOKS = "readwise_books"
    READWISE_ARTICLES = "readwise_articles"
    READWISE_PODCASTS = "readwise_podcasts"
    READWISE_TWEETS = "readwise_tweets"
    READWISE_SUPPLEMENTALS = "readwise_supplementals"

    @classmethod
    def parse(cls, raw: str) -> SourceId | None:
        try:
            return cls(raw)
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class SourceConfig:
    id: SourceId
    name: str
    media_type: str
    kind: ItemKind
    pagination: PaginationStyle
    batch_size: int
    requires_auth: bool = True
    requires_username: bool = False


DEFAULT_SOURCE_CONFIGS: tuple[SourceConfig, ...] = (
    SourceConfig(SourceId.LISTENBRAINZ, "ListenBrainz", "music", ItemKind.LISTEN, PaginationStyle.TIME_CURSOR, 100),
    SourceConfig(
        SourceId.LASTFM,
        "Last.fm",
        "music",
        ItemKind.LISTEN,
        PaginationStyle.PAGE_CURSOR,
        200,
        requires_auth=False,
        requires_username=True,
    ),
    SourceConfig(SourceId.TRAKT_MOVIES, "Trakt Movies", "video", ItemKind.WATCH, PaginationStyle.PAGE_CURSOR, 100),
    SourceConfig(SourceId.TRAKT_SHOWS, "Trakt TV Shows", "video", ItemKind.WATCH, PaginationStyle.PAGE_CURSOR, 100),
    # Snapshot sources return everything in one call, so they carry no batch size.
    SourceConfig(SourceId.SIMKL, "Simkl", "video", ItemKind.WATCH, PaginationStyle.SNAPSHOT, 0),
    SourceConfig(SourceId.HARDCOVER, "Hardcover", "book", ItemKind.READ, PaginationStyle.SNAPSHOT, 0),
    SourceConfig(SourceId.FOURSQUARE, "Foursquare / Swarm", "location", ItemKind.CHECKIN, PaginationStyle.SNAPSHOT, 0),
    SourceConfig(SourceId.READWISE_BOOKS, "Readwise Books", "book", ItemKind.READ, PaginationStyle.SNAPSHOT, 0),
    SourceConfig(
        SourceId.READWISE_ARTICLES, "Readwise Articles", "article", ItemKind.BOOKMARK, PaginationStyle.SNAPSHOT, 0
    ),
    SourceConfig(
        SourceId.READWISE_PODCASTS, "Readwise Podcasts", "podcast", ItemKind.LISTEN, PaginationStyle.SNAPSHOT, 0
    ),
    SourceConfig(SourceId.READWISE_TWEETS, "Readwise Tweets", "tweet", ItemKind.BOOKMARK, PaginationStyle.SNAPSHOT, 0),
    SourceConfig(
        SourceId.READWISE_SUPPLEMENTALS,
        "Readwise Supplementals",
        "supplemental",
        ItemKind.NOTE,
        PaginationStyle.SNAPSHOT,
        0,
    ),
)

AdapterFactory = Callable[[str | None], SourceAdapter]


class SourceRegistry:
    """Source configs plus one adapter factory per source, built once at startup."""

    def __init__(
        self,
        configs: Mapping[SourceId, SourceConfig],
        factories: Mapping[SourceId, AdapterFactory],
        *,
        sync_start_dates: Mapping[str, str] | None = None,
        default_usernames: Mapping[SourceId, str | None] | None = None,
    ) -> None:
        missing = set(configs) - set(factories)
        if missing:
            raise ValueError(f"no adapter factory for sources: {sorted(source.value for source in missing)}")
        self._configs = dict(configs)
        self._factories = dict(factories)
        self._sync_start_dates = dict(sync_start_dates or {})
        self._default_usernames = {key: value for key, value in (default_usernames or {}).items() if value}

    def get(self, source: str) -> SourceConfig | None:
        source_id = SourceId.parse(source)
        if source_id is None:
            return None
        return self._configs.get(source_id)

    def all(self) -> list[SourceConfig]:
        return list(self._configs.values())

    def resolve_username(self, source_id: SourceId, username: str | None) -> str | None:
        return username or self._default_usernames.get(source_id)

    def build_adapter(self, source_id: SourceId, *, username: str | None = None) -> SourceAdapter:
        return self._factories[source_id](self.resolve_username(source_id, username))

    def sync_start_date(self, source_id: SourceId) -> datetime | None:
        raw = self._sync_start_dates.get(source_id.value)
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed


def build_source_registry(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    gate: RateGate | None = None,
) -> SourceRegistry:
    shared_gate = gate or RateGate()
    common = {"client": client, "timeout": settings.http_timeout_seconds, "gate": shared_gate}

    factories: dict[SourceId, AdapterFactory] = {
        SourceId.LISTENBRAINZ: lambda username: ListenBrainzAdapter(
            token=settings.listenbrainz_token, username=username, **common
        ),
        SourceId.LASTFM: lambda username: LastFmAdapter(api_key=settings.lastfm_api_key, username=username, **common),
        SourceId.TRAKT_MOVIES: lambda _: TraktAdapter(
            source=SourceId.TRAKT_MOVIES.value,
            history_type="movies",
            client_id=settings.trakt_client_id,
            access_token=settings.trakt_access_token,
            **common,
        ),
        SourceId.TRAKT_SHOWS: lambda _: TraktAdapter(
            source=SourceId.TRAKT_SHOWS.value,
            history_type="episodes",
            client_id=settings.trakt_client_id,
            access_token=settings.trakt_access_token,
            **common,
        ),
        SourceId.SIMKL: lambda _: SimklAdapter(
            client_id=settings.simkl_client_id, access_token=settings.simkl_access_token, **common
        ),
        SourceId.HARDCOVER: lambda _: HardcoverAdapter(api_token=settings.hardcover_api_token, **common),
        SourceId.FOURSQUARE: lambda _: FoursquareAdapter(access_token=settings.foursquare_access_token, **common),
        SourceId.READWISE_BOOKS: lambda _: _readwise(settings, SourceId.READWISE_BOOKS, "books", True, common),
        SourceId.READWISE_ARTICLES: lambda _: _readwise(settings, SourceId.READWISE_ARTICLES, "articles", False, common),
        SourceId.READWISE_PODCASTS: lambda _: _readwise(settings, SourceId.READWISE_PODCASTS, "podcasts", True, common),
        SourceId.READWISE_TWEETS: lambda _: _readwise(settings, SourceId.READWISE_TWEETS, "tweets", False, common),
        SourceId.READWISE_SUPPLEMENTALS: lambda _: _readwise(
            settings, SourceId.READWISE_SUPPLEMENTALS, "supplementals", False, common
        ),
    }
    configs = {config.id: config for config in DEFAULT_SOURCE_CONFIGS}
    return SourceRegistry(
        configs,
        factories,
        sync_start_dates=settings.sync_start_dates,
        default_usernames={
            SourceId.LISTENBRAINZ: settings.listenbrainz_username,
            SourceId.LASTFM: settings.lastfm_username,
        },
    )


def _readwise(
    settings: Settings,
    source_id: SourceId,
    category: str,
    include_highlights: bool,
    common: dict,
) -> ReadwiseAdapter:
    return ReadwiseAdapter(
        source=source_id.value,
        category=category,
        access_token=settings.readwise_access_token,
        include_highlights=include_highlights,
        **common,
    )
