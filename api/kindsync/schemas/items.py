from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ItemKind(str, Enum):
    LISTEN = "listen"
    WATCH = "watch"
    READ = "read"
    CHECKIN = "checkin"
    BOOKMARK = "bookmark"
    NOTE = "note"


class Highlight(BaseModel):
    text: str = ""
    note: str = ""


class ItemBase(BaseModel):
    source: str
    highlights: list[Highlight] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def occurred_at(self) -> datetime | None:
        return None

    @property
    def display_title(self) -> str:
        return ""


class ListenItem(ItemBase):
    kind: Literal["listen"] = "listen"
    track: str | None = None
    artist: str | None = None
    album: str | None = None
    listened_at: datetime | None = None
    episode_title: str | None = None
    show_name: str | None = None
    cover: str | None = None
    mbid: str | None = None
    source_url: str | None = None

    @property
    def is_podcast(self) -> bool:
        return self.episode_title is not None or self.show_name is not None

    @property
    def cite_name(self) -> str | None:
        return self.episode_title or self.track

    @property
    def occurred_at(self) -> datetime | None:
        return self.listened_at

    @property
    def display_title(self) -> str:
        return f"Listened to {self.cite_name or ''}"


class WatchItem(ItemBase):
    kind: Literal["watch"] = "watch"
    title: str | None = None
    year: int | None = None
    watched_at: datetime | None = None
    media_type: Literal["movie", "episode", "show", "anime"] = "movie"
    show: str | None = None
    season: int | None = None
    episode: int | None = None
    poster: str | None = None
    tmdb_id: str | None = None
    imdb_id: str | None = None
    trakt_id: str | None = None
    tvdb_id: str | None = None

    @property
    def occurred_at(self) -> datetime | None:
        return self.watched_at

    @property
    def display_title(self) -> str:
        return f"Watched {self.title or ''}"


class ReadItem(ItemBase):
    kind: Literal["read"] = "read"
    title: str | None = None
    author: str | None = None
    finished_at: datetime | None = None
    cover: str | None = None
    isbn: str | None = None
    asin: str | None = None
    source_url: str | None = None
    highlight_count: int = 0

    @property
    def occurred_at(self) -> datetime | None:
        return self.finished_at

    @property
    def display_title(self) -> str:
        return f"Read {self.title or ''}"


class CheckinItem(ItemBase):
    kind: Literal["checkin"] = "checkin"
    venue_name: str | None = None
    venue_id: str | None = None
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    timestamp: datetime | None = None
    shout: str | None = None

    @property
    def occurred_at(self) -> datetime | None:
        return self.timestamp

    @property
    def display_title(self) -> str:
        return f"Checked in at {self.venue_name or 'Unknown Venue'}"


class BookmarkItem(ItemBase):
    kind: Literal["bookmark"] = "bookmark"
    source_url: str | None = None
    title: str | None = None
    author: str | None = None
    cover: str | None = None
    saved_at: datetime | None = None
    highlight_count: int = 0

    @property
    def occurred_at(self) -> datetime | None:
        return self.saved_at

    @property
    def display_title(self) -> str:
        return f"Bookmarked: {self.title or 'Untitled'}"


class NoteItem(ItemBase):
    kind: Literal["note"] = "note"
    title: str | None = None
    body: str | None = None
    source_url: str | None = None
    noted_at: datetime | None = None
    highlight_count: int = 0

    @property
    def occurred_at(self) -> datetime | None:
        return self.noted_at

    @property
    def display_title(self) -> str:
        return self.title or "Untitled"


Item = Annotated[
    Union[ListenItem, WatchItem, ReadItem, CheckinItem, BookmarkItem, NoteItem],
    Field(discriminator="kind"),
]
ITEM_ADAPTER: TypeAdapter[Item] = TypeAdapter(Item)
