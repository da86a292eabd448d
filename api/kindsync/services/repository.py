from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from datetime import date, datetime, timezone
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from kindsync.schemas.imports import ImportJob, JobStatus
from kindsync.schemas.items import ItemKind
from kindsync.schemas.webhooks import (
    PENDING_CAPACITY,
    RAW_WEBHOOK_CAPACITY,
    WEBHOOK_LOG_CAPACITY,
    PendingEntry,
    RawWebhook,
    WebhookLogEntry,
)
from kindsync.services.content import ContentDraft, ContentRepositoryError


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


JOB_COLUMNS = """
  id::text as id,
  source,
  status,
  options,
  counters,
  total,
  progress,
  cursor,
  errors,
  created_at,
  started_at,
  completed_at,
  updated_at,
  run_after,
  locked_until,
  lock_token
"""
TERMINAL_SQL = "('completed', 'failed', 'cancelled')"
ACTIVE_SQL = "('pending', 'running')"


def _coerce_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        pending_capacity: int = PENDING_CAPACITY,
        log_capacity: int = WEBHOOK_LOG_CAPACITY,
        raw_capacity: int = RAW_WEBHOOK_CAPACITY,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pending_capacity = max(1, pending_capacity)
        self.log_capacity = max(1, log_capacity)
        self.raw_capacity = max(1, raw_capacity)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Jobs

    async def create_job(self, job: ImportJob) -> ImportJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into import_jobs (
                  id, source, status, options, counters, total, progress, cursor, errors,
                  created_at, started_at, completed_at, updated_at, run_after
                )
                values ($1::uuid, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8, $9::jsonb, $10, $11, $12, $13, $14)
                returning {JOB_COLUMNS}
                """,
                job.id,
                job.source,
                job.status.value,
                job.options.model_dump_json(),
                job.counters.model_dump_json(),
                job.total,
                job.progress,
                job.cursor,
                json.dumps(job.errors),
                job.created_at,
                job.started_at,
                job.completed_at,
                job.updated_at,
                job.run_after,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("job already exists") from exc
        return self._job_row_to_model(row)

    async def get_job(self, job_id: str) -> ImportJob | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from import_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_model(row) if row else None

    async def save_job(self, job: ImportJob) -> ImportJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update import_jobs
                set
                  status = case when status in {TERMINAL_SQL} then status else $2 end,
                  completed_at = case when status in {TERMINAL_SQL} then completed_at else $3 end,
                  run_after = case when status in {TERMINAL_SQL} then null else $4 end,
                  options = $5::jsonb,
                  counters = $6::jsonb,
                  total = $7,
                  progress = $8,
                  cursor = $9,
                  errors = $10::jsonb,
                  started_at = $11,
                  updated_at = $12
                where id = $1::uuid
                returning {JOB_COLUMNS}
                """,
                job.id,
                job.status.value,
                job.completed_at,
                job.run_after,
                job.options.model_dump_json(),
                job.counters.model_dump_json(),
                job.total,
                job.progress,
                job.cursor,
                json.dumps(job.errors),
                job.started_at,
                job.updated_at,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_model(row)

    async def cancel_job(self, job_id: str, now: datetime) -> ImportJob | None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        f"""
                        update import_jobs
                        set status = 'cancelled', completed_at = $2, updated_at = $2, run_after = null
                        where id = $1::uuid and status in {ACTIVE_SQL}
                        """,
                        job_id,
                        now,
                    )
                    row = await conn.fetchrow(f"select {JOB_COLUMNS} from import_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_model(row) if row else None

    async def try_acquire_lease(self, job_id: str, token: str, now: datetime, lease_seconds: int) -> ImportJob | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update import_jobs
                set
                  locked_until = $3::timestamptz + ($4::int * interval '1 second'),
                  lock_token = $2
                where id = $1::uuid
                  and status in {ACTIVE_SQL}
                  and (locked_until is null or locked_until <= $3)
                returning {JOB_COLUMNS}
                """,
                job_id,
                token,
                now,
                lease_seconds,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_model(row) if row else None

    async def release_lease(self, job_id: str, token: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update import_jobs
            set locked_until = null, lock_token = null
            where id = $1::uuid and lock_token = $2
            """,
            job_id,
            token,
        )

    async def set_run_after(self, job_id: str, run_after: datetime | None) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            f"update import_jobs set run_after = $2 where id = $1::uuid and status in {ACTIVE_SQL}",
            job_id,
            run_after,
        )
        return result.endswith(" 1")

    async def list_jobs(self, statuses: Iterable[JobStatus] | None = None, limit: int = 50) -> list[ImportJob]:
        pool = await self._get_pool()
        wanted = [status.value for status in statuses] if statuses is not None else None
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from import_jobs
            where ($1::text[] is null or status = any($1::text[]))
            order by created_at desc
            limit $2
            """,
            wanted,
            limit,
        )
        return [self._job_row_to_model(row) for row in rows]

    async def list_due_jobs(self, now: datetime, limit: int) -> list[ImportJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from import_jobs
            where status in {ACTIVE_SQL}
              and run_after is not null
              and run_after <= $1
              and (locked_until is null or locked_until <= $1)
            order by run_after asc, created_at asc
            limit $2
            """,
            now,
            limit,
        )
        return [self._job_row_to_model(row) for row in rows]

    async def delete_jobs_completed_before(self, cutoff: datetime) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            f"delete from import_jobs where status in {TERMINAL_SQL} and completed_at < $1",
            cutoff,
        )
        return int(result.split()[-1])

    # Pending review queue

    async def add_pending(self, entry: PendingEntry) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "insert into pending_items (id, item, received_at) values ($1::uuid, $2::jsonb, $3)",
                    entry.id,
                    entry.item.model_dump_json(),
                    entry.received_at,
                )
                await conn.execute(
                    """
                    delete from pending_items
                    where id in (
                      select id from pending_items order by received_at desc, seq desc offset $1
                    )
                    """,
                    self.pending_capacity,
                )

    async def list_pending(self) -> list[PendingEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select id::text as id, item, received_at from pending_items order by received_at asc, seq asc"
        )
        return [self._pending_row_to_model(row) for row in rows]

    async def take_pending(self, entry_id: str) -> PendingEntry | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                "delete from pending_items where id = $1::uuid returning id::text as id, item, received_at",
                entry_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._pending_row_to_model(row) if row else None

    async def restore_pending(self, entry: PendingEntry) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into pending_items (id, item, received_at)
            values ($1::uuid, $2::jsonb, $3)
            on conflict (id) do nothing
            """,
            entry.id,
            entry.item.model_dump_json(),
            entry.received_at,
        )

    async def remove_pending(self, entry_id: str) -> bool:
        return await self.take_pending(entry_id) is not None

    # Webhook history

    async def append_webhook_log(self, entry: WebhookLogEntry) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into webhook_log (service, status_code, action, message, received_at)
                    values ($1, $2, $3, $4, $5)
                    """,
                    entry.service,
                    entry.status_code,
                    entry.action,
                    entry.message,
                    entry.received_at,
                )
                await conn.execute(
                    "delete from webhook_log where seq in (select seq from webhook_log order by seq desc offset $1)",
                    self.log_capacity,
                )

    async def list_webhook_log(self, limit: int) -> list[WebhookLogEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select service, status_code, action, message, received_at
            from webhook_log
            order by seq desc
            limit $1
            """,
            limit,
        )
        return [WebhookLogEntry.model_validate(dict(row)) for row in rows]

    async def store_raw_webhook(self, raw: RawWebhook) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "insert into raw_webhooks (service, payload, received_at) values ($1, $2::jsonb, $3)",
                    raw.service,
                    json.dumps(raw.payload, default=str),
                    raw.received_at,
                )
                await conn.execute(
                    "delete from raw_webhooks where seq in (select seq from raw_webhooks order by seq desc offset $1)",
                    self.raw_capacity,
                )

    async def list_raw_webhooks(self, limit: int) -> list[RawWebhook]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select service, payload, received_at from raw_webhooks order by seq desc limit $1",
            limit,
        )
        return [
            RawWebhook(
                service=row["service"],
                payload=_coerce_json(row["payload"], {}),
                received_at=row["received_at"],
            )
            for row in rows
        ]

    # Secrets

    async def get_or_create_secret(self, key: str, factory: Callable[[], str]) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "insert into pipeline_secrets (key, value) values ($1, $2) on conflict (key) do nothing",
                    key,
                    factory(),
                )
                return await conn.fetchval("select value from pipeline_secrets where key = $1", key)

    async def set_secret(self, key: str, value: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into pipeline_secrets (key, value, updated_at)
            values ($1, $2, now())
            on conflict (key) do update set value = excluded.value, updated_at = now()
            """,
            key,
            value,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("KS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_model(row: asyncpg.Record) -> ImportJob:
        return ImportJob(
            id=row["id"],
            source=row["source"],
            status=JobStatus(row["status"]),
            options=_coerce_json(row["options"], {}),
            counters=_coerce_json(row["counters"], {}),
            total=row["total"],
            progress=row["progress"],
            cursor=row["cursor"],
            errors=_coerce_json(row["errors"], []),
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
            run_after=row["run_after"],
            locked_until=row["locked_until"],
            lock_token=row["lock_token"],
        )

    @staticmethod
    def _pending_row_to_model(row: asyncpg.Record) -> PendingEntry:
        return PendingEntry.model_validate(
            {
                "id": row["id"],
                "item": _coerce_json(row["item"], {}),
                "received_at": row["received_at"],
            }
        )


class PostgresContentRepository:
    """Content records kept next to the pipeline tables, sharing the repository pool."""

    def __init__(self, repository: PostgresRepository) -> None:
        self.repository = repository

    async def create(self, draft: ContentDraft) -> str:
        pool = await self.repository._get_pool()
        try:
            return await pool.fetchval(
                """
                insert into content_records (kind, title, body, fingerprint, status, published_at, fields)
                values ($1, $2, $3, $4, $5, coalesce($6, now()), $7::jsonb)
                returning id::text
                """,
                draft.kind.value,
                draft.title,
                draft.body,
                draft.fingerprint,
                draft.status,
                draft.published_at,
                json.dumps(draft.fields, default=str),
            )
        except asyncpg.PostgresError as exc:
            raise ContentRepositoryError(f"content record not created: {exc}") from exc

    async def find_existing(self, kind: ItemKind, fingerprint: str, day: date | None) -> str | None:
        pool = await self.repository._get_pool()
        return await pool.fetchval(
            """
            select id::text
            from content_records
            where kind = $1
              and fingerprint = $2
              and ($3::date is null or (published_at at time zone 'utc')::date = $3::date)
            order by created_at asc
            limit 1
            """,
            kind.value,
            fingerprint,
            day,
        )

    async def find_by_title(self, kind: ItemKind, title: str, day: date | None) -> str | None:
        pool = await self.repository._get_pool()
        return await pool.fetchval(
            """
            select id::text
            from content_records
            where kind = $1
              and title = $2
              and ($3::date is null or (published_at at time zone 'utc')::date = $3::date)
            order by created_at asc
            limit 1
            """,
            kind.value,
            title,
            day,
        )

    async def get_fields(self, record_id: str) -> dict[str, Any]:
        pool = await self.repository._get_pool()
        try:
            value = await pool.fetchval("select fields from content_records where id = $1::uuid", record_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise ContentRepositoryError(f"content record not found: {record_id}") from exc
        if value is None:
            raise ContentRepositoryError(f"content record not found: {record_id}")
        return _coerce_json(value, {})

    async def update(self, record_id: str, fields: dict[str, Any]) -> int:
        pool = await self.repository._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    value = await conn.fetchval(
                        "select fields from content_records where id = $1::uuid for update",
                        record_id,
                    )
                    if value is None:
                        raise ContentRepositoryError(f"content record not found: {record_id}")
                    current = _coerce_json(value, {})
                    changed = {key: item for key, item in fields.items() if current.get(key) != item}
                    if changed:
                        await conn.execute(
                            """
                            update content_records
                            set fields = fields || $2::jsonb, updated_at = $3
                            where id = $1::uuid
                            """,
                            record_id,
                            json.dumps(changed, default=str),
                            datetime.now(timezone.utc),
                        )
                    return len(changed)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise ContentRepositoryError(f"content record not found: {record_id}") from exc
