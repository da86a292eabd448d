from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from kindsync.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from kindsync_worker.core.config import get_settings
from kindsync_worker.jobs.driver import drive_due_steps, interval_elapsed
from kindsync_worker.services.import_client import ImportClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    client = ImportClient(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    last_cleanup_at: float | None = None
    last_sync_at: float | None = None

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if interval_elapsed(now, last_cleanup_at, settings.cleanup_interval_seconds):
                        deleted = await client.cleanup()
                        if deleted:
                            logger.info("deleted finished import jobs: %s", deleted)
                        last_cleanup_at = now

                    if interval_elapsed(now, last_sync_at, settings.scheduled_sync_interval_seconds):
                        synced = await client.scheduled_sync()
                        logger.info(
                            "scheduled sync started=%s skipped=%s",
                            synced.get("started", []),
                            synced.get("skipped", {}),
                        )
                        last_sync_at = now

                    outcomes = await drive_due_steps(client, limit=settings.due_batch_size)
                    backoff = settings.poll_interval_seconds
                    if not outcomes:
                        await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - keeps the poll loop alive
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
