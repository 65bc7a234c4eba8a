"""Publish dispatcher.

Sends one piece of copy to every channel of a rule. Channels are attempted
concurrently and independently: a failing channel is recorded and never stops
the others. There are no retries here (a retried publish can duplicate a post).
"""

import asyncio
import logging
from datetime import datetime, timezone

from dealcast.channels import ChannelRegistry, get_channel_registry
from dealcast.domain import AutomationRule, ChannelTarget, CopyResult, Listing, PublishAttempt

logger = logging.getLogger("uvicorn.error")


class DispatchContractError(ValueError):
    """A rule without channels reached the dispatcher."""


class PublishDispatcher:
    def __init__(self, registry: ChannelRegistry | None = None):
        self.registry = registry or get_channel_registry()

    async def _attempt(
        self,
        target: ChannelTarget,
        copy: CopyResult,
        listing: Listing,
        rule: AutomationRule,
    ) -> PublishAttempt:
        attempt = PublishAttempt(
            rule_id=rule.id,
            listing_id=listing.external_id,
            channel=target,
            success=False,
            attempted_at=datetime.now(timezone.utc),
        )
        publisher = self.registry.publisher_for(target.kind)
        if publisher is None:
            attempt.error = f"no publisher for channel kind '{target.kind}'"
            logger.warning(f"[dispatch] rule={rule.id} channel={target.kind}:{target.channel_id} {attempt.error}")
            return attempt

        try:
            receipt = await publisher.publish(target.channel_id, copy.text, listing.image_url)
        except Exception as e:
            attempt.error = f"{type(e).__name__}: {e}"
            logger.error(
                f"[dispatch] rule={rule.id} listing={listing.external_id} "
                f"channel={target.kind}:{target.channel_id} raised {attempt.error}"
            )
            return attempt

        attempt.success = receipt.success
        attempt.external_message_id = receipt.external_message_id
        attempt.error = receipt.error
        if receipt.success:
            logger.info(
                f"[dispatch] published rule={rule.id} listing={listing.external_id} "
                f"channel={target.kind}:{target.channel_id} id={receipt.external_message_id}"
            )
        else:
            logger.warning(
                f"[dispatch] rejected rule={rule.id} listing={listing.external_id} "
                f"channel={target.kind}:{target.channel_id}: {receipt.error}"
            )
        return attempt

    async def dispatch(
        self,
        copy: CopyResult,
        listing: Listing,
        rule: AutomationRule,
        channels: list[ChannelTarget] | None = None,
    ) -> list[PublishAttempt]:
        """Publish copy to the channels of a rule.

        Args:
            copy: Generated copy.
            listing: Listing being published (image used as media).
            rule: Rule whose channels are targeted.
            channels: Subset of the rule's channels to target (default: all).

        Returns:
            One PublishAttempt per targeted channel, in order.

        Raises:
            DispatchContractError: the rule has no channels.
        """
        if not rule.channels:
            raise DispatchContractError(f"rule {rule.id} has no channels configured")

        targets = rule.channels if channels is None else channels
        return list(await asyncio.gather(*(self._attempt(target, copy, listing, rule) for target in targets)))
