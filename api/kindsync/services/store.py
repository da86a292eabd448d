from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Protocol

from kindsync.schemas.imports import ACTIVE_STATUSES, ImportJob, JobStatus
from kindsync.schemas.webhooks import (
    PENDING_CAPACITY,
    RAW_WEBHOOK_CAPACITY,
    WEBHOOK_LOG_CAPACITY,
    PendingEntry,
    RawWebhook,
    WebhookLogEntry,
)


class ImportStore(Protocol):
    """Durable state shared by import steps and webhook requests."""

    async def close(self) -> None: ...

    async def create_job(self, job: ImportJob) -> ImportJob: ...

    async def get_job(self, job_id: str) -> ImportJob | None: ...

    async def save_job(self, job: ImportJob) -> ImportJob: ...

    async def cancel_job(self, job_id: str, now: datetime) -> ImportJob | None: ...

    async def try_acquire_lease(
        self, job_id: str, token: str, now: datetime, lease_seconds: int
    ) -> ImportJob | None: ...

    async def release_lease(self, job_id: str, token: str) -> None: ...

    async def set_run_after(self, job_id: str, run_after: datetime | None) -> bool: ...

    async def list_jobs(self, statuses: Iterable[JobStatus] | None = None, limit: int = 50) -> list[ImportJob]: ...

    async def list_due_jobs(self, now: datetime, limit: int) -> list[ImportJob]: ...

    async def delete_jobs_completed_before(self, cutoff: datetime) -> int: ...

    async def add_pending(self, entry: PendingEntry) -> None: ...

    async def list_pending(self) -> list[PendingEntry]: ...

    async def take_pending(self, entry_id: str) -> PendingEntry | None: ...

    async def restore_pending(self, entry: PendingEntry) -> None: ...

    async def remove_pending(self, entry_id: str) -> bool: ...

    async def append_webhook_log(self, entry: WebhookLogEntry) -> None: ...

    async def list_webhook_log(self, limit: int) -> list[WebhookLogEntry]: ...

    async def store_raw_webhook(self, raw: RawWebhook) -> None: ...

    async def list_raw_webhooks(self, limit: int) -> list[RawWebhook]: ...

    async def get_or_create_secret(self, key: str, factory: Callable[[], str]) -> str: ...

    async def set_secret(self, key: str, value: str) -> None: ...


class InMemoryStore:
    """Process-local store used when no database URL is configured.

    No method awaits part-way through a mutation, so every call is atomic within one event loop.
    """

    def __init__(
        self,
        *,
        pending_capacity: int = PENDING_CAPACITY,
        log_capacity: int = WEBHOOK_LOG_CAPACITY,
        raw_capacity: int = RAW_WEBHOOK_CAPACITY,
    ) -> None:
        self.jobs: dict[str, ImportJob] = {}
        self.pending: deque[PendingEntry] = deque(maxlen=pending_capacity)
        self.webhook_log: deque[WebhookLogEntry] = deque(maxlen=log_capacity)
        self.raw_webhooks: deque[RawWebhook] = deque(maxlen=raw_capacity)
        self.secrets: dict[str, str] = {}

    async def close(self) -> None:
        return None

    async def create_job(self, job: ImportJob) -> ImportJob:
        self.jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> ImportJob | None:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def save_job(self, job: ImportJob) -> ImportJob:
        stored = self.jobs.get(job.id)
        updated = job.model_copy(deep=True)
        # A terminal status written by someone else (cancel) always wins.
        if stored is not None and stored.is_terminal and updated.status != stored.status:
            updated.status = stored.status
            updated.completed_at = stored.completed_at
            updated.run_after = None
        self.jobs[job.id] = updated
        return updated.model_copy(deep=True)

    async def cancel_job(self, job_id: str, now: datetime) -> ImportJob | None:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        if not job.is_terminal:
            job.status = JobStatus.CANCELLED
            job.completed_at = now
            job.updated_at = now
            job.run_after = None
        return job.model_copy(deep=True)

    async def try_acquire_lease(self, job_id: str, token: str, now: datetime, lease_seconds: int) -> ImportJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.status not in ACTIVE_STATUSES:
            return None
        if job.locked_until is not None and job.locked_until > now:
            return None
        job.locked_until = now + timedelta(seconds=lease_seconds)
        job.lock_token = token
        return job.model_copy(deep=True)

    async def release_lease(self, job_id: str, token: str) -> None:
        job = self.jobs.get(job_id)
        if job is not None and job.lock_token == token:
            job.locked_until = None
            job.lock_token = None

    async def set_run_after(self, job_id: str, run_after: datetime | None) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        job.run_after = run_after
        return True

    async def list_jobs(self, statuses: Iterable[JobStatus] | None = None, limit: int = 50) -> list[ImportJob]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [job for job in self.jobs.values() if wanted is None or job.status in wanted]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def list_due_jobs(self, now: datetime, limit: int) -> list[ImportJob]:
        due = [
            job
            for job in self.jobs.values()
            if job.status in ACTIVE_STATUSES
            and job.run_after is not None
            and job.run_after <= now
            and (job.locked_until is None or job.locked_until <= now)
        ]
        due.sort(key=lambda job: (job.run_after, job.created_at))
        return [job.model_copy(deep=True) for job in due[:limit]]

    async def delete_jobs_completed_before(self, cutoff: datetime) -> int:
        expired = [
            job_id
            for job_id, job in self.jobs.items()
            if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self.jobs[job_id]
        return len(expired)

    async def add_pending(self, entry: PendingEntry) -> None:
        self.pending.append(entry.model_copy(deep=True))

    async def list_pending(self) -> list[PendingEntry]:
        return [entry.model_copy(deep=True) for entry in self.pending]

    async def take_pending(self, entry_id: str) -> PendingEntry | None:
        for entry in self.pending:
            if entry.id == entry_id:
                self.pending.remove(entry)
                return entry
        return None

    async def restore_pending(self, entry: PendingEntry) -> None:
        if any(existing.id == entry.id for existing in self.pending):
            return
        ordered = sorted([*self.pending, entry], key=lambda pending: pending.received_at)
        self.pending = deque(ordered, maxlen=self.pending.maxlen)

    async def remove_pending(self, entry_id: str) -> bool:
        return await self.take_pending(entry_id) is not None

    async def append_webhook_log(self, entry: WebhookLogEntry) -> None:
        self.webhook_log.append(entry)

    async def list_webhook_log(self, limit: int) -> list[WebhookLogEntry]:
        return list(reversed(self.webhook_log))[:limit]

    async def store_raw_webhook(self, raw: RawWebhook) -> None:
        self.raw_webhooks.append(raw)

    async def list_raw_webhooks(self, limit: int) -> list[RawWebhook]:
        return list(reversed(self.raw_webhooks))[:limit]

    async def get_or_create_secret(self, key: str, factory: Callable[[], str]) -> str:
        if key not in self.secrets:
            self.secrets[key] = factory()
        return self.secrets[key]

    async def set_secret(self, key: str, value: str) -> None:
        self.secrets[key] = value
