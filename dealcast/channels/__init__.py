"""Outbound channel publishers.

Publishers are looked up by the channel target's `kind`:
- telegram: Telegram Bot API
- webhook: JSON POST to the channel id (a URL)
- log: writes to the application log
"""

from dealcast.channels.base import ChannelPublisher
from dealcast.channels.log import LogPublisher
from dealcast.channels.telegram import TelegramPublisher
from dealcast.channels.webhook import WebhookPublisher


class ChannelRegistry:
    """Maps channel kinds to publishers."""

    def __init__(self, publishers: dict[str, ChannelPublisher] | None = None):
        self._publishers: dict[str, ChannelPublisher] = {k.lower(): p for k, p in (publishers or {}).items()}

    def register(self, kind: str, publisher: ChannelPublisher) -> None:
        self._publishers[kind.lower()] = publisher

    def publisher_for(self, kind: str) -> ChannelPublisher | None:
        return self._publishers.get(kind.lower())

    @property
    def kinds(self) -> list[str]:
        return sorted(self._publishers)


_registry: ChannelRegistry | None = None


def get_channel_registry() -> ChannelRegistry:
    """Default registry singleton (telegram, webhook, log)."""
    global _registry
    if _registry is None:
        _registry = ChannelRegistry(
            {
                "telegram": TelegramPublisher(),
                "webhook": WebhookPublisher(),
                "log": LogPublisher(),
            }
        )
    return _registry


__all__ = [
    "ChannelPublisher",
    "ChannelRegistry",
    "LogPublisher",
    "TelegramPublisher",
    "WebhookPublisher",
    "get_channel_registry",
]
