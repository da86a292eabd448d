from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class PaginationStyle(str, Enum):
    TIME_CURSOR = "time_cursor"
    PAGE_CURSOR = "page_cursor"
    SNAPSHOT = "snapshot"


class AdapterError(Exception):
    """Raised when a source adapter cannot produce a page (auth, network, malformed response)."""

    def __init__(self, source: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message
        self.status_code = status_code


@dataclass(slots=True)
class Batch:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
    total: int = 0


class SourceAdapter(Protocol):
    """Snapshot adapters treat a `limit` of 0 as no cap and return the whole library."""

    pagination: PaginationStyle

    def is_authenticated(self) -> bool: ...

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch: ...


def parse_int_cursor(source: str, cursor: str | None, *, default: int) -> int:
    if cursor is None or cursor == "":
        return default
    try:
        return int(cursor)
    except ValueError as exc:
        raise AdapterError(source, f"invalid cursor {cursor!r}") from exc
