from __future__ import annotations

from typing import Any

import httpx


class ReportClient:
    def __init__(
        self,
        base_url: str,
        *,
        actor_id: str | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-Actor-Id": actor_id} if actor_id else {}
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def get_ready_reports(self, limit: int = 15) -> list[dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/reports/ready", params={"limit": limit}, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def process_report(self, report_id: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/reports/{report_id}/process", headers=self.headers)
            response.raise_for_status()
            return response.json()
