from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from kindsync.schemas.items import Item


class WebhookAction(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    QUEUED = "queued"
    IGNORED = "ignored"
    STORED = "stored"
    PROCESSED = "processed"


class WebhookResult(BaseModel):
    action: WebhookAction
    message: str | None = None
    record_id: str | None = None
    pending_id: str | None = None
    count: int | None = None
    results: list["WebhookResult"] | None = None


class WebhookLogEntry(BaseModel):
    service: str
    status_code: int
    action: str | None = None
    message: str | None = None
    received_at: datetime


class PendingEntry(BaseModel):
    id: str
    item: Item
    received_at: datetime


class ApproveResponse(BaseModel):
    id: str
    action: WebhookAction
    record_id: str | None = None


class RejectResponse(BaseModel):
    id: str
    removed: bool


class TokenRotateResponse(BaseModel):
    service: str
    token: str


class RawWebhook(BaseModel):
    service: str
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime


PENDING_CAPACITY = 100
WEBHOOK_LOG_CAPACITY = 100
RAW_WEBHOOK_CAPACITY = 50
