from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Protocol

import httpx
from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class StepClient(Protocol):
    async def get_due_jobs(self, limit: int = 5) -> list[dict[str, Any]]: ...

    async def run_step(self, job_id: str) -> dict[str, Any]: ...


async def drive_due_steps(client: StepClient, *, limit: int = 5) -> Counter[str]:
    """Fires one step per due job, in order, each to completion before the next."""
    outcomes: Counter[str] = Counter()
    jobs = await client.get_due_jobs(limit=limit)
    for job in jobs:
        job_id = job.get("id")
        if not job_id:
            continue
        with tracer.start_as_current_span("worker.import_step") as span:
            span.set_attribute("job.id", job_id)
            try:
                result = await client.run_step(job_id)
            except httpx.HTTPError:
                span.set_attribute("import.outcome", "error")
                logger.exception("import step failed job_id=%s source=%s", job_id, job.get("source"))
                outcomes["error"] += 1
                continue
            outcome = str(result.get("outcome", "unknown"))
            span.set_attribute("import.outcome", outcome)
        outcomes[outcome] += 1
        logger.info(
            "import step ran job_id=%s source=%s outcome=%s status=%s",
            job_id,
            job.get("source"),
            outcome,
            result.get("status"),
        )
    return outcomes


def interval_elapsed(now: float, last_run_at: float | None, interval_seconds: float) -> bool:
    if interval_seconds <= 0:
        return False
    return last_run_at is None or now - last_run_at >= interval_seconds
