from __future__ import annotations

import asyncio

import httpx
import pytest

from kindsync_worker.services.import_client import ImportClient


def _client(handler) -> ImportClient:
    return ImportClient("http://api.test/", "worker-key", timeout=5.0, transport=httpx.MockTransport(handler))


def test_get_due_jobs_sends_key_and_limit() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "job-1", "source": "listenbrainz"}])

    jobs = asyncio.run(_client(handler).get_due_jobs(limit=3))

    assert jobs == [{"id": "job-1", "source": "listenbrainz"}]
    assert str(seen[0].url) == "http://api.test/imports/due?limit=3"
    assert seen[0].headers["X-API-Key"] == "worker-key"


def test_run_step_posts_to_job_step() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/imports/job-1/step"
        return httpx.Response(200, json={"job_id": "job-1", "outcome": "processed", "status": "running"})

    result = asyncio.run(_client(handler).run_step("job-1"))

    assert result["outcome"] == "processed"


def test_cleanup_returns_deleted_count() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"deleted": 4})

    assert asyncio.run(_client(handler).cleanup()) == 4


def test_http_errors_propagate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "invalid API key"})

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_client(handler).scheduled_sync())
