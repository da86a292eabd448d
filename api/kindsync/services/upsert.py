from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from kindsync.core.urls import bookmark_url_key
from kindsync.schemas.imports import ImportOptions
from kindsync.schemas.items import Item, ItemKind
from kindsync.services.bodies import build_body, build_fields, display_title
from kindsync.services.content import ContentDraft, ContentRepository

logger = logging.getLogger(__name__)

TITLE_FALLBACK_KINDS = frozenset({ItemKind.LISTEN, ItemKind.WATCH, ItemKind.READ})


class UpsertOutcome(str, Enum):
    IMPORTED = "imported"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(slots=True)
class UpsertResult:
    outcome: UpsertOutcome
    record_id: str | None = None
    changed_fields: int = 0


@dataclass(frozen=True, slots=True)
class Fingerprint:
    key: str
    day: date | None


def _day(moment: datetime | None) -> date | None:
    return moment.astimezone(timezone.utc).date() if moment is not None else None


def _text_key(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


FINGERPRINTS: Mapping[ItemKind, Callable[[Any], tuple[str | None, date | None]]] = {
    ItemKind.LISTEN: lambda item: (_text_key(item.cite_name), _day(item.listened_at)),
    ItemKind.WATCH: lambda item: (_text_key(item.title), _day(item.watched_at)),
    ItemKind.READ: lambda item: (_text_key(item.title), None),
    ItemKind.CHECKIN: lambda item: (_text_key(item.venue_name), _day(item.timestamp)),
    ItemKind.BOOKMARK: lambda item: (bookmark_url_key(item.source_url) if item.source_url else None, None),
    ItemKind.NOTE: lambda item: (_text_key(item.title), None),
}


def fingerprint(item: Item) -> Fingerprint | None:
    key, day = FINGERPRINTS[ItemKind(item.kind)](item)
    if key is None:
        return None
    return Fingerprint(key=key, day=day)


class UpsertEngine:
    """Decides create, update or skip for one normalized item against the content repository."""

    def __init__(
        self,
        content: ContentRepository,
        *,
        embed_source: str = "none",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.content = content
        self.embed_source = embed_source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def find_existing(self, item: Item) -> str | None:
        kind = ItemKind(item.kind)
        fp = fingerprint(item)
        if fp is None:
            return None

        record_id = await self.content.find_existing(kind, fp.key, fp.day)
        if record_id is not None:
            return record_id

        # Records written before fingerprints existed only carry a title.
        if kind in TITLE_FALLBACK_KINDS:
            return await self.content.find_by_title(kind, display_title(item), fp.day)
        return None

    async def upsert(self, item: Item, options: ImportOptions, *, origin: str) -> UpsertResult:
        existing_id = await self.find_existing(item)
        if existing_id is not None:
            if options.update_existing:
                changed = await self.update_existing(existing_id, item)
                outcome = UpsertOutcome.UPDATED if changed else UpsertOutcome.SKIPPED
                return UpsertResult(outcome=outcome, record_id=existing_id, changed_fields=changed)
            return UpsertResult(outcome=UpsertOutcome.SKIPPED, record_id=existing_id)

        if not options.create_records:
            logger.info(
                "item imported without record kind=%s source=%s title=%s",
                item.kind,
                item.source,
                display_title(item),
            )
            return UpsertResult(outcome=UpsertOutcome.IMPORTED)

        record_id = await self.create(item, status=options.post_status, origin=origin)
        return UpsertResult(outcome=UpsertOutcome.IMPORTED, record_id=record_id)

    async def create(self, item: Item, *, status: str, origin: str) -> str:
        fp = fingerprint(item)
        fields = build_fields(item, self.embed_source)
        fields["imported_from"] = origin
        fields["imported_at"] = self._clock().isoformat()

        draft = ContentDraft(
            kind=ItemKind(item.kind),
            title=display_title(item),
            body=build_body(item, self.embed_source),
            fingerprint=fp.key if fp is not None else "",
            fields=fields,
            status=status,
            published_at=item.occurred_at,
        )
        return await self.content.create(draft)

    async def update_existing(self, record_id: str, item: Item) -> int:
        current = await self.content.get_fields(record_id)
        desired = build_fields(item, self.embed_source)
        changed = {key: value for key, value in desired.items() if current.get(key) != value}
        if not changed:
            return 0

        count = len(changed)
        changed["metadata_updated_at"] = self._clock().isoformat()
        await self.content.update(record_id, changed)
        return count
