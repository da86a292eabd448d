from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from kindsync.schemas.imports import ImportOptions
from kindsync.schemas.items import Item
from kindsync.schemas.webhooks import ApproveResponse, PendingEntry, RejectResponse, WebhookAction
from kindsync.services.store import ImportStore
from kindsync.services.upsert import UpsertEngine, UpsertOutcome

logger = logging.getLogger(__name__)


class PendingNotFoundError(Exception):
    """Raised when a pending entry id is unknown or was already handled."""


def webhook_origin(item: Item) -> str:
    return f"webhook_{item.source}"


class PendingQueue:
    """Webhook items waiting for a manual decision, keyed by stable ids."""

    def __init__(
        self,
        store: ImportStore,
        engine: UpsertEngine,
        *,
        post_status: str = "publish",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.post_status = post_status
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def enqueue(self, item: Item) -> PendingEntry:
        entry = PendingEntry(id=str(uuid4()), item=item, received_at=self._clock())
        await self.store.add_pending(entry)
        logger.info("webhook item queued for review pending_id=%s source=%s", entry.id, item.source)
        return entry

    async def list(self) -> list[PendingEntry]:
        return await self.store.list_pending()

    async def approve(self, entry_id: str) -> ApproveResponse:
        entry = await self.store.take_pending(entry_id)
        if entry is None:
            raise PendingNotFoundError(entry_id)

        options = ImportOptions(post_status=self.post_status, skip_existing=True, update_existing=False)
        try:
            result = await self.engine.upsert(entry.item, options, origin=webhook_origin(entry.item))
        except Exception:
            await self.store.restore_pending(entry)
            logger.exception("pending approval failed, entry restored pending_id=%s", entry_id)
            raise

        action = WebhookAction.CREATED if result.outcome == UpsertOutcome.IMPORTED else WebhookAction.SKIPPED
        logger.info("pending item approved pending_id=%s action=%s", entry_id, action.value)
        return ApproveResponse(id=entry_id, action=action, record_id=result.record_id)

    async def reject(self, entry_id: str) -> RejectResponse:
        removed = await self.store.remove_pending(entry_id)
        if not removed:
            raise PendingNotFoundError(entry_id)
        logger.info("pending item rejected pending_id=%s", entry_id)
        return RejectResponse(id=entry_id, removed=True)
