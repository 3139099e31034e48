from __future__ import annotations

from typing import Any

import httpx

RESPONSE_TEXT_MAX_LENGTH = 2000


class TriggerError(Exception):
    """A trigger endpoint answered with a non-success status or could not be reached."""

    def __init__(self, *, url: str, status_code: int, response_text: str) -> None:
        super().__init__(f"trigger call failed status={status_code} url={url}")
        self.url = url
        self.status_code = status_code
        self.response_text = response_text[:RESPONSE_TEXT_MAX_LENGTH]


class TriggerClient:
    def __init__(
        self,
        base_url: str,
        cron_secret: str,
        *,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {cron_secret}"}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def dispatch(self) -> dict[str, Any]:
        return await self._post("/cron/dispatch")

    async def monitor(self) -> dict[str, Any]:
        return await self._post("/cron/monitor")

    async def report_failure(self, *, status_code: int, url: str, response_text: str) -> dict[str, Any]:
        return await self._post(
            "/cron/report",
            json={"status": status_code, "url": url, "responseText": response_text},
        )

    async def _post(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=json, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=json, headers=self.headers)
        except httpx.HTTPError as exc:
            raise TriggerError(url=url, status_code=0, response_text=f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise TriggerError(url=url, status_code=response.status_code, response_text=response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TriggerError(
                url=url,
                status_code=response.status_code,
                response_text=response.text or f"{type(exc).__name__}: {exc}",
            ) from exc
        if not isinstance(payload, dict):
            raise TriggerError(url=url, status_code=response.status_code, response_text=response.text)
        return payload
