"""Channel publisher interface."""

from typing import Protocol

from dealcast.domain import PublishReceipt


class ChannelPublisher(Protocol):
    async def publish(self, channel_id: str, text: str, media: str | None = None) -> PublishReceipt: ...
