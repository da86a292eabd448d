from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from kindsync.services.adapters.base import AdapterError

logger = logging.getLogger(__name__)

USER_AGENT = "kindsync/0.1"
ERROR_FIELDS = ("error", "message", "error_message", "error_description", "status_message")


class RateGate:
    """Minimum interval between calls, keyed by actor. Advisory only: callers wait, nothing is queued."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._last_call: dict[str, float] = {}

    async def wait(self, key: str, min_interval_seconds: float) -> None:
        if min_interval_seconds <= 0:
            self._last_call[key] = self._clock()
            return
        last = self._last_call.get(key)
        if last is not None:
            remaining = min_interval_seconds - (self._clock() - last)
            if remaining > 0:
                await self._sleep(remaining)
        self._last_call[key] = self._clock()


class ApiClient:
    """Shared httpx plumbing for source adapters."""

    source = ""
    base_url = ""
    min_interval_seconds = 1.0

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        gate: RateGate | None = None,
        min_interval_seconds: float | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._gate = gate or RateGate()
        if min_interval_seconds is not None:
            self.min_interval_seconds = min_interval_seconds

    def default_headers(self) -> dict[str, str]:
        return {}

    async def get_json(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = await self.request("GET", endpoint, params=params, headers=headers)
        return self._decode(response)

    async def post_json(
        self,
        endpoint: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = await self.request("POST", endpoint, json_body=body, headers=headers)
        return self._decode(response)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        await self._gate.wait(self.source, self.min_interval_seconds)
        url = self._build_url(endpoint)
        merged_headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            **self.default_headers(),
            **(headers or {}),
        }

        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, params=params, json=json_body, headers=merged_headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as temp_client:
                    response = await temp_client.request(
                        method, url, params=params, json=json_body, headers=merged_headers
                    )
        except httpx.HTTPError as exc:
            logger.warning("adapter request failed source=%s url=%s error=%s", self.source, url, exc)
            raise AdapterError(self.source, f"request failed: {exc}") from exc

        if response.status_code >= 400:
            message = self._extract_error_message(response)
            logger.warning(
                "adapter request rejected source=%s url=%s status=%s message=%s",
                self.source,
                url,
                response.status_code,
                message,
            )
            raise AdapterError(self.source, message, status_code=response.status_code)
        return response

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not endpoint:
            return self.base_url
        return f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise AdapterError(self.source, "response is not valid JSON", status_code=response.status_code) from exc

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            for key in ERROR_FIELDS:
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
            nested = data.get("error")
            if isinstance(nested, dict):
                for key in ERROR_FIELDS:
                    value = nested.get(key)
                    if isinstance(value, str) and value:
                        return value
        return f"{self.source} API returned error code {response.status_code}"


def expect_dict(source: str, payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise AdapterError(source, "malformed response: expected an object")
    return payload


def expect_list(source: str, payload: Any) -> list[Any]:
    if not isinstance(payload, list):
        raise AdapterError(source, "malformed response: expected a list")
    return payload
