from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})

ERROR_LOG_CAPACITY = 10
STATUS_ERROR_COUNT = 5


class ImportOptions(BaseModel):
    limit: int | None = Field(default=None, ge=0)
    date_from: datetime | None = None
    date_to: datetime | None = None
    create_records: bool = True
    skip_existing: bool = True
    update_existing: bool = False
    post_status: str = "draft"
    username: str | None = None


class JobCounters(BaseModel):
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.imported + self.updated + self.skipped + self.failed


class ImportJob(BaseModel):
    id: str
    source: str
    status: JobStatus = JobStatus.PENDING
    options: ImportOptions = Field(default_factory=ImportOptions)
    counters: JobCounters = Field(default_factory=JobCounters)
    total: int = 0
    progress: int = 0
    cursor: str | None = None
    errors: list[str] = Field(default_factory=list)
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime
    run_after: datetime | None = None
    locked_until: datetime | None = None
    lock_token: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStatusOut(BaseModel):
    id: str
    source: str
    status: JobStatus
    progress: int
    total: int
    counters: JobCounters
    errors: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    elapsed_seconds: int = 0


class StartImportResponse(BaseModel):
    job_id: str
    status: JobStatus


class StepResponse(BaseModel):
    job_id: str
    outcome: str
    status: JobStatus | None = None


class CleanupResponse(BaseModel):
    deleted: int


class ScheduledSyncResponse(BaseModel):
    started: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)


class SourceOut(BaseModel):
    id: str
    name: str
    kind: str
    pagination: str
    batch_size: int
    requires_auth: bool
    requires_username: bool
    authenticated: bool
