from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from kindsync.services.store import ImportStore


class Scheduler(Protocol):
    """One-shot delayed trigger for an import step."""

    async def schedule(self, job_id: str, delay_seconds: float) -> bool: ...


class StoreScheduler:
    """Records the next step time on the job; the worker polls for due jobs and fires them."""

    def __init__(self, store: ImportStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def schedule(self, job_id: str, delay_seconds: float) -> bool:
        run_after = self._clock() + timedelta(seconds=max(0.0, delay_seconds))
        return await self.store.set_run_after(job_id, run_after)
