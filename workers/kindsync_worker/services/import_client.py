from __future__ import annotations

from typing import Any

import httpx


class ImportClient:
    """Worker-side calls into the import API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def get_due_jobs(self, limit: int = 5) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/imports/due", params={"limit": limit}, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def run_step(self, job_id: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/imports/{job_id}/step", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def cleanup(self) -> int:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/imports/cleanup", headers=self.headers)
            response.raise_for_status()
            return int(response.json().get("deleted", 0))

    async def scheduled_sync(self) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/imports/scheduled-sync", headers=self.headers)
            response.raise_for_status()
            return response.json()
