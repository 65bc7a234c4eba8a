"""Telegram Bot API publisher.

Posts a photo with the copy as caption when the listing has an image and the
text fits Telegram's caption limit, otherwise a plain text message.
"""

import logging
from typing import Any

import httpx

from dealcast.domain import PublishReceipt
from dealcast.settings import get_settings

logger = logging.getLogger("uvicorn.error")

CAPTION_LIMIT = 1024
MESSAGE_LIMIT = 4096


class TelegramPublisher:
    """Client for the Telegram Bot API (sendMessage / sendPhoto)."""

    BASE_URL = "https://api.telegram.org"

    def __init__(self, bot_token: str | None = None, http_client: httpx.AsyncClient | None = None):
        settings = get_settings()
        self.bot_token = bot_token or settings.telegram_bot_token
        self.timeout = settings.publish_timeout_seconds
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _method_url(self, method: str) -> str:
        return f"{self.BASE_URL}/bot{self.bot_token}/{method}"

    async def publish(self, channel_id: str, text: str, media: str | None = None) -> PublishReceipt:
        """Send copy to a chat/channel.

        Args:
            channel_id: Chat id or @channelusername.
            text: Message text.
            media: Optional image URL.

        Returns:
            Receipt with Telegram's message_id on success.
        """
        if not self.bot_token:
            return PublishReceipt(success=False, error="telegram bot token not configured")

        if media and len(text) <= CAPTION_LIMIT:
            method = "sendPhoto"
            payload: dict[str, Any] = {"chat_id": channel_id, "photo": media, "caption": text}
        else:
            method = "sendMessage"
            payload = {"chat_id": channel_id, "text": text[:MESSAGE_LIMIT]}

        client = await self._get_client()
        response = await client.post(self._method_url(method), json=payload)
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or not data.get("ok"):
            description = data.get("description") or f"HTTP {response.status_code}"
            logger.warning(f"[telegram] {method} failed chat={channel_id}: {description}")
            return PublishReceipt(success=False, error=str(description))

        message_id = (data.get("result") or {}).get("message_id")
        return PublishReceipt(success=True, external_message_id=str(message_id) if message_id is not None else None)
