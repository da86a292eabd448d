from __future__ import annotations

import asyncio

import pytest

from kindsync.schemas.items import WatchItem
from kindsync.schemas.webhooks import WebhookAction
from kindsync.services.content import ContentRepositoryError
from kindsync.services.pending import PendingNotFoundError


def _movie(title: str) -> WatchItem:
    return WatchItem(source="plex", title=title, media_type="movie")


def _enqueue(container, count: int, clock=None) -> list[str]:
    ids = []
    for index in range(count):
        entry = asyncio.run(container.pending.enqueue(_movie(f"Movie {index}")))
        ids.append(entry.id)
        if clock is not None:
            clock.advance(1)
    return ids


def test_queue_keeps_the_newest_hundred(container, clock) -> None:
    ids = _enqueue(container, 150, clock)

    pending = asyncio.run(container.pending.list())

    assert len(pending) == 100
    assert [entry.id for entry in pending] == ids[50:]


def test_approve_creates_record_and_removes_entry(container) -> None:
    entry_id = _enqueue(container, 1)[0]

    result = asyncio.run(container.pending.approve(entry_id))

    assert result.action == WebhookAction.CREATED
    record = container.content.records[result.record_id]
    assert record.status == "publish"
    assert record.fields["imported_from"] == "webhook_plex"
    assert asyncio.run(container.pending.list()) == []


def test_second_approve_of_same_id_is_not_found(container) -> None:
    entry_id = _enqueue(container, 1)[0]
    asyncio.run(container.pending.approve(entry_id))

    with pytest.raises(PendingNotFoundError):
        asyncio.run(container.pending.approve(entry_id))
    assert len(container.content.records) == 1


def test_approve_of_known_item_is_skipped(container) -> None:
    first, second = _enqueue(container, 1) + _enqueue(container, 1)

    asyncio.run(container.pending.approve(first))
    result = asyncio.run(container.pending.approve(second))

    assert result.action == WebhookAction.SKIPPED
    assert len(container.content.records) == 1


def test_ids_stay_valid_when_earlier_entries_leave(container) -> None:
    first, second, third = _enqueue(container, 3)

    asyncio.run(container.pending.reject(first))
    result = asyncio.run(container.pending.approve(third))

    assert result.id == third
    assert [entry.id for entry in asyncio.run(container.pending.list())] == [second]


def test_reject_unknown_id_is_not_found(container) -> None:
    with pytest.raises(PendingNotFoundError):
        asyncio.run(container.pending.reject("nope"))


def test_failed_approve_puts_entry_back_in_order(container, clock) -> None:
    ids = _enqueue(container, 3, clock)

    async def broken_create(draft):
        raise ContentRepositoryError("disk full")

    container.content.create = broken_create

    with pytest.raises(ContentRepositoryError):
        asyncio.run(container.pending.approve(ids[1]))

    assert [entry.id for entry in asyncio.run(container.pending.list())] == ids
