from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import uuid4

from opentelemetry import trace

from kindsync.schemas.imports import (
    ACTIVE_STATUSES,
    ERROR_LOG_CAPACITY,
    STATUS_ERROR_COUNT,
    ImportJob,
    ImportOptions,
    JobStatus,
    JobStatusOut,
    ScheduledSyncResponse,
)
from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle
from kindsync.services.content import ContentRepositoryError
from kindsync.services.normalizer import ItemError, normalize_record
from kindsync.services.scheduler import Scheduler
from kindsync.services.sources import SourceConfig, SourceRegistry
from kindsync.services.store import ImportStore
from kindsync.services.upsert import UpsertEngine, UpsertOutcome

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SCHEDULED_SYNC_LIMIT = 50


class ImportValidationError(Exception):
    """Raised when an import cannot be started or found."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StepOutcome(str, Enum):
    PROCESSED = "processed"
    COMPLETED = "completed"
    FAILED = "failed"
    MISSING = "missing"
    INACTIVE = "inactive"
    LOCKED = "locked"


@dataclass(slots=True)
class StepResult:
    job_id: str
    outcome: StepOutcome
    status: JobStatus | None = None


def effective_batch_size(global_cap: int, source_cap: int, limit: int | None, processed: int) -> int:
    size = source_cap
    if global_cap > 0:
        size = min(size, global_cap)
    if limit:
        size = min(size, max(1, limit - processed))
    return max(1, size)


def snapshot_limit(limit: int | None, processed: int) -> int:
    """Cap for a one-call snapshot fetch. 0 asks the source for everything it has."""
    if not limit:
        return 0
    return max(1, limit - processed)


def status_view(job: ImportJob, now: datetime) -> JobStatusOut:
    elapsed = 0
    if job.started_at is not None:
        end = job.completed_at or now
        elapsed = max(0, int((end - job.started_at).total_seconds()))
    return JobStatusOut(
        id=job.id,
        source=job.source,
        status=job.status,
        progress=job.progress,
        total=job.total,
        counters=job.counters,
        errors=job.errors[-STATUS_ERROR_COUNT:],
        started_at=job.started_at,
        completed_at=job.completed_at,
        elapsed_seconds=elapsed,
    )


class ImportOrchestrator:
    """Job lifecycle for batch imports; each step runs one adapter page under a lease."""

    def __init__(
        self,
        *,
        store: ImportStore,
        sources: SourceRegistry,
        engine: UpsertEngine,
        scheduler: Scheduler,
        batch_size: int = 0,
        batch_delay_seconds: float = 2,
        lease_seconds: int = 300,
        retention_days: int = 7,
        auto_import_sources: Iterable[str] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.sources = sources
        self.engine = engine
        self.scheduler = scheduler
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.lease_seconds = max(1, lease_seconds)
        self.retention_days = retention_days
        self.auto_import_sources = list(auto_import_sources)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def start_import(self, source: str, options: ImportOptions | None = None) -> ImportJob:
        options = options or ImportOptions()
        config = self._validate(source, options)

        now = self._clock()
        job = ImportJob(
            id=str(uuid4()),
            source=config.id.value,
            status=JobStatus.PENDING,
            options=options,
            created_at=now,
            updated_at=now,
        )
        job = await self.store.create_job(job)
        await self.scheduler.schedule(job.id, 0)
        logger.info("import job created job_id=%s source=%s", job.id, job.source)
        return job

    def _validate(self, source: str, options: ImportOptions) -> SourceConfig:
        config = self.sources.get(source)
        if config is None:
            raise ImportValidationError(f"unknown source: {source}", status_code=404)
        username = self.sources.resolve_username(config.id, options.username)
        if config.requires_username and not username:
            raise ImportValidationError(f"{config.name} requires a username")
        adapter = self.sources.build_adapter(config.id, username=username)
        if not adapter.is_authenticated():
            raise ImportValidationError(f"{config.name} is not configured")
        return config

    async def process_batch(self, job_id: str) -> StepResult:
        with tracer.start_as_current_span("import.process_batch") as span:
            span.set_attribute("job.id", job_id)
            token = uuid4().hex
            job = await self.store.try_acquire_lease(job_id, token, self._clock(), self.lease_seconds)
            if job is None:
                result = await self._not_runnable(job_id)
            else:
                try:
                    result = await self._step(job)
                finally:
                    await self.store.release_lease(job_id, token)
            span.set_attribute("import.outcome", result.outcome.value)
            return result

    async def _not_runnable(self, job_id: str) -> StepResult:
        job = await self.store.get_job(job_id)
        if job is None:
            return StepResult(job_id, StepOutcome.MISSING)
        if job.is_terminal:
            return StepResult(job_id, StepOutcome.INACTIVE, job.status)
        logger.info("import step skipped, lease held job_id=%s", job_id)
        return StepResult(job_id, StepOutcome.LOCKED, job.status)

    async def _step(self, job: ImportJob) -> StepResult:
        now = self._clock()
        errors: deque[str] = deque(job.errors, maxlen=ERROR_LOG_CAPACITY)

        config = self.sources.get(job.source)
        if config is None:
            errors.append(f"unknown source: {job.source}")
            return await self._finish(job, JobStatus.FAILED, errors, now)

        if job.status == JobStatus.PENDING:
            job.status = JobStatus.RUNNING
            job.started_at = now

        if config.pagination == PaginationStyle.SNAPSHOT:
            size = snapshot_limit(job.options.limit, job.counters.processed)
        else:
            size = effective_batch_size(self.batch_size, config.batch_size, job.options.limit, job.counters.processed)
        since = job.options.date_from or self.sources.sync_start_date(config.id)
        adapter = self.sources.build_adapter(config.id, username=job.options.username)

        try:
            batch = await adapter.fetch_batch(job.cursor, since, size)
        except AdapterError as exc:
            logger.warning("import step failed job_id=%s source=%s error=%s", job.id, job.source, exc)
            errors.append(str(exc))
            return await self._finish(job, JobStatus.FAILED, errors, now)

        if not batch.items:
            job.progress = 100
            return await self._finish(job, JobStatus.COMPLETED, errors, now)

        await self._apply_batch(job, config, batch, errors)
        job.errors = list(errors)
        job.cursor = batch.next_cursor
        job.updated_at = now

        processed = job.counters.processed
        reported = max(job.total, batch.total)
        if reported > 0:
            job.total = max(reported, processed)
            job.progress = max(job.progress, min(100, round(processed / job.total * 100)))

        limit = job.options.limit
        if (limit and processed >= limit) or not batch.has_more:
            job.progress = 100
            return await self._finish(job, JobStatus.COMPLETED, errors, now)

        saved = await self.store.save_job(job)
        if saved.is_terminal:
            logger.info("import job finished elsewhere during step job_id=%s status=%s", job.id, saved.status.value)
            return StepResult(job.id, StepOutcome.INACTIVE, saved.status)

        await self.scheduler.schedule(job.id, self.batch_delay_seconds)
        logger.info(
            "import batch processed job_id=%s source=%s items=%d processed=%d",
            job.id,
            job.source,
            len(batch.items),
            processed,
        )
        return StepResult(job.id, StepOutcome.PROCESSED, saved.status)

    async def _apply_batch(self, job: ImportJob, config: SourceConfig, batch: Batch, errors: deque[str]) -> None:
        date_to = job.options.date_to
        for raw in batch.items:
            try:
                item = normalize_record(config.id, raw)
                if date_to is not None and item.occurred_at is not None and item.occurred_at > date_to:
                    job.counters.skipped += 1
                    continue
                result = await self.engine.upsert(item, job.options, origin=config.id.value)
            except (ItemError, ContentRepositoryError) as exc:
                logger.warning("import item failed job_id=%s source=%s error=%s", job.id, job.source, exc)
                job.counters.failed += 1
                errors.append(str(exc))
                continue

            if result.outcome == UpsertOutcome.IMPORTED:
                job.counters.imported += 1
            elif result.outcome == UpsertOutcome.UPDATED:
                job.counters.updated += 1
            else:
                job.counters.skipped += 1

    async def _finish(self, job: ImportJob, status: JobStatus, errors: deque[str], now: datetime) -> StepResult:
        job.status = status
        job.errors = list(errors)
        job.completed_at = now
        job.updated_at = now
        job.run_after = None
        saved = await self.store.save_job(job)
        logger.info(
            "import job finished job_id=%s source=%s status=%s imported=%d updated=%d skipped=%d failed=%d",
            saved.id,
            saved.source,
            saved.status.value,
            saved.counters.imported,
            saved.counters.updated,
            saved.counters.skipped,
            saved.counters.failed,
        )
        outcome = StepOutcome.COMPLETED if saved.status == JobStatus.COMPLETED else StepOutcome.FAILED
        if saved.status == JobStatus.CANCELLED:
            outcome = StepOutcome.INACTIVE
        return StepResult(saved.id, outcome, saved.status)

    async def cancel(self, job_id: str) -> ImportJob:
        job = await self.store.cancel_job(job_id, self._clock())
        if job is None:
            raise ImportValidationError("job not found", status_code=404)
        logger.info("import job cancel requested job_id=%s status=%s", job.id, job.status.value)
        return job

    async def get_status(self, job_id: str) -> JobStatusOut:
        job = await self.store.get_job(job_id)
        if job is None:
            raise ImportValidationError("job not found", status_code=404)
        return status_view(job, self._clock())

    async def list_active(self) -> list[JobStatusOut]:
        now = self._clock()
        jobs = await self.store.list_jobs(ACTIVE_STATUSES)
        return [status_view(job, now) for job in jobs]

    async def list_due(self, limit: int = 10) -> list[JobStatusOut]:
        now = self._clock()
        jobs = await self.store.list_due_jobs(now, limit)
        return [status_view(job, now) for job in jobs]

    async def cleanup_old_jobs(self) -> int:
        cutoff = self._clock() - timedelta(days=self.retention_days)
        deleted = await self.store.delete_jobs_completed_before(cutoff)
        if deleted:
            logger.info("import jobs cleaned up deleted=%d", deleted)
        return deleted

    async def run_scheduled_sync(self) -> ScheduledSyncResponse:
        response = ScheduledSyncResponse()
        if not self.auto_import_sources:
            return response

        active_sources = {job.source for job in await self.store.list_jobs(ACTIVE_STATUSES, limit=500)}
        for source in self.auto_import_sources:
            if source in active_sources:
                response.skipped[source] = "import already running"
                continue
            options = ImportOptions(
                limit=SCHEDULED_SYNC_LIMIT,
                skip_existing=True,
                update_existing=False,
                create_records=True,
            )
            try:
                job = await self.start_import(source, options)
            except ImportValidationError as exc:
                logger.warning("scheduled sync skipped source=%s reason=%s", source, exc.message)
                response.skipped[source] = exc.message
                continue
            response.started.append(job.id)
        return response
