"""Publisher that only writes the post to the log (dry runs, local setups)."""

import logging
from uuid import uuid4

from dealcast.domain import PublishReceipt

logger = logging.getLogger("uvicorn.error")


class LogPublisher:
    async def publish(self, channel_id: str, text: str, media: str | None = None) -> PublishReceipt:
        message_id = uuid4().hex[:12]
        logger.info(f"[publish:log] channel={channel_id} id={message_id} media={media or '-'}\n{text}")
        return PublishReceipt(success=True, external_message_id=message_id)
