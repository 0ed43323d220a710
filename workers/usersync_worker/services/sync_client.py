from __future__ import annotations

from typing import Any

import httpx


class SyncApiClient:
    """Machine client for the user-sync API's processor endpoints."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def process_jobs(self, max_jobs: int = 1) -> dict[str, Any]:
        return await self._post("/jobs/process", params={"max_jobs": max(1, min(max_jobs, 50))})

    async def retry_sweep(self, limit: int = 1000) -> int:
        payload = await self._post("/jobs/retry-sweep", params={"limit": limit})
        return int(payload.get("requeued", 0))

    async def reap_stale(self, limit: int = 100) -> int:
        payload = await self._post("/jobs/reap-stale", params={"limit": limit})
        return int(payload.get("requeued", 0))

    async def _post(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            response = await self._client.post(url, params=params, headers=self.headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, params=params, headers=self.headers)
        response.raise_for_status()
        return response.json()
