from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from kindsync.schemas.items import ItemKind


class ContentRepositoryError(Exception):
    """Raised by a content repository when a record cannot be written."""


@dataclass(slots=True)
class ContentDraft:
    kind: ItemKind
    title: str
    body: str
    fingerprint: str
    fields: dict[str, Any] = field(default_factory=dict)
    status: str = "draft"
    published_at: datetime | None = None


@dataclass(slots=True)
class ContentRecord:
    id: str
    kind: ItemKind
    title: str
    body: str
    fingerprint: str
    status: str
    published_at: datetime
    fields: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ContentRepository(Protocol):
    async def create(self, draft: ContentDraft) -> str: ...

    async def find_existing(self, kind: ItemKind, fingerprint: str, day: date | None) -> str | None: ...

    async def find_by_title(self, kind: ItemKind, title: str, day: date | None) -> str | None: ...

    async def get_fields(self, record_id: str) -> dict[str, Any]: ...

    async def update(self, record_id: str, fields: dict[str, Any]) -> int: ...


class InMemoryContentRepository:
    """Content collaborator used when no host content system is wired in."""

    def __init__(self) -> None:
        self.records: dict[str, ContentRecord] = {}

    async def create(self, draft: ContentDraft) -> str:
        now = datetime.now(timezone.utc)
        record = ContentRecord(
            id=str(uuid4()),
            kind=draft.kind,
            title=draft.title,
            body=draft.body,
            fingerprint=draft.fingerprint,
            status=draft.status,
            published_at=draft.published_at or now,
            fields=dict(draft.fields),
            created_at=now,
            updated_at=now,
        )
        self.records[record.id] = record
        return record.id

    async def find_existing(self, kind: ItemKind, fingerprint: str, day: date | None) -> str | None:
        for record in self.records.values():
            if record.kind != kind or record.fingerprint != fingerprint:
                continue
            if day is not None and record.published_at.date() != day:
                continue
            return record.id
        return None

    async def find_by_title(self, kind: ItemKind, title: str, day: date | None) -> str | None:
        for record in self.records.values():
            if record.kind != kind or record.title != title:
                continue
            if day is not None and record.published_at.date() != day:
                continue
            return record.id
        return None

    async def get_fields(self, record_id: str) -> dict[str, Any]:
        record = self.records.get(record_id)
        if record is None:
            raise ContentRepositoryError(f"content record not found: {record_id}")
        return dict(record.fields)

    async def update(self, record_id: str, fields: dict[str, Any]) -> int:
        record = self.records.get(record_id)
        if record is None:
            raise ContentRepositoryError(f"content record not found: {record_id}")
        changed = 0
        for key, value in fields.items():
            if record.fields.get(key) != value:
                record.fields[key] = value
                changed += 1
        if changed:
            record.updated_at = datetime.now(timezone.utc)
        return changed
