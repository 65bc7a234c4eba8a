"""Generic JSON webhook publisher. The channel id is the target URL."""

import httpx

from dealcast.domain import PublishReceipt
from dealcast.settings import get_settings


class WebhookPublisher:
    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self.timeout = get_settings().publish_timeout_seconds
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def publish(self, channel_id: str, text: str, media: str | None = None) -> PublishReceipt:
        client = await self._get_client()
        response = await client.post(channel_id, json={"text": text, "media": media})
        if response.status_code >= 300:
            return PublishReceipt(success=False, error=f"HTTP {response.status_code}")

        message_id = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("id") is not None:
            message_id = str(data["id"])
        return PublishReceipt(success=True, external_message_id=message_id)
