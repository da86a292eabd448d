from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from kindsync.core.config import Settings
from kindsync.services.adapters.base import AdapterError, Batch, PaginationStyle
from kindsync.services.container import Container, build_container
from kindsync.services.content import InMemoryContentRepository
from kindsync.services.sources import DEFAULT_SOURCE_CONFIGS, SourceId, SourceRegistry
from kindsync.services.store import InMemoryStore

os.environ.setdefault("KS_OTEL_ENABLED", "false")

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
OPERATOR_KEY = "operator-key"
WORKER_KEY = "worker-key"


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTimeCursorAdapter:
    """In-memory stand-in for a time-cursor source holding `count` listens, newest first."""

    pagination = PaginationStyle.TIME_CURSOR

    def __init__(self, count: int, *, newest_ts: int = 1_714_500_000, step_seconds: int = 600) -> None:
        self.listens = [
            {
                "listened_at": newest_ts - index * step_seconds,
                "track_metadata": {"track_name": f"Track {index}", "artist_name": "Artist"},
            }
            for index in range(count)
        ]
        self.calls: list[tuple[str | None, datetime | None, int]] = []
        self.authenticated = True
        self.fail_with: AdapterError | None = None
        self.report_total = False

    def is_authenticated(self) -> bool:
        return self.authenticated

    async def fetch_batch(self, cursor: str | None, since: datetime | None, limit: int) -> Batch:
        self.calls.append((cursor, since, limit))
        if self.fail_with is not None:
            raise self.fail_with

        max_ts = int(cursor) if cursor else None
        min_ts = int(since.timestamp()) if since else 0
        window = [
            listen
            for listen in self.listens
            if (max_ts is None or listen["listened_at"] < max_ts) and listen["listened_at"] > min_ts
        ]
        page = window[:limit]
        if not page:
            return Batch()
        oldest = min(listen["listened_at"] for listen in page)
        total = len(self.listens) if self.report_total else 0
        return Batch(items=page, next_cursor=str(oldest), has_more=len(page) >= limit, total=total)


def listenbrainz_registry(adapter: Any, **kwargs: Any) -> SourceRegistry:
    configs = {config.id: config for config in DEFAULT_SOURCE_CONFIGS if config.id == SourceId.LISTENBRAINZ}
    return SourceRegistry(configs, {SourceId.LISTENBRAINZ: lambda _: adapter}, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        operator_api_key=OPERATOR_KEY,
        worker_api_key=WORKER_KEY,
        database_url=None,
        otel_enabled=False,
        batch_delay_seconds=2,
    )


@pytest.fixture
def adapter() -> FakeTimeCursorAdapter:
    return FakeTimeCursorAdapter(250)


@pytest.fixture
def container(settings: Settings, adapter: FakeTimeCursorAdapter, clock: FakeClock) -> Iterator[Container]:
    yield build_container(
        settings,
        store=InMemoryStore(),
        content=InMemoryContentRepository(),
        sources=listenbrainz_registry(adapter),
        clock=clock,
    )


@pytest.fixture
def make_adapter() -> type[FakeTimeCursorAdapter]:
    return FakeTimeCursorAdapter


@pytest.fixture
def make_registry() -> Any:
    return listenbrainz_registry


@pytest.fixture
def client(settings: Settings, container: Container) -> Iterator[TestClient]:
    from kindsync.core.config import get_settings
    from kindsync.main import app
    from kindsync.services.container import get_container

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_container] = lambda: container
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return {"X-API-Key": OPERATOR_KEY}


@pytest.fixture
def worker_headers() -> dict[str, str]:
    return {"X-API-Key": WORKER_KEY}
