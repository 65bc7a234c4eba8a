"""Copy generation: template rendering or cached, quota-limited model output.

Flow for GENERATED rules:
1. Fingerprint = hash(title, price, discount, style directive, model id)
2. Cache hit -> return cached text (no quota used)
3. Reserve one slot of the rule's daily quota (atomic in the store)
   - exhausted -> fallback (rule template or default), reason "quota_exhausted"
4. Call the model under its own timeout
   - success -> cache with TTL, keep the slot
   - failure/timeout -> give the slot back, fallback with "model_error"/"model_timeout"

Identical misses are single-flighted in-process and guarded by a short store lock
across processes, so one generation never takes two slots.
"""

import asyncio
import logging
import math
from dataclasses import dataclass

from dealcast.clock import Clock, SystemClock, day_key, seconds_until_end_of_day
from dealcast.domain import AutomationRule, CopyResult, CopySource, GeneratedMode, Listing, TemplateMode
from dealcast.services.llm_client import CopyProvider, _hash_key, build_copy_prompt, get_copy_provider
from dealcast.services.templates import build_listing_link, render_template
from dealcast.settings import Settings, get_settings
from dealcast.stores.copy_store import CopyStore, copy_key, get_copy_store

logger = logging.getLogger("uvicorn.error")

FALLBACK_QUOTA_EXHAUSTED = "quota_exhausted"
FALLBACK_MODEL_ERROR = "model_error"
FALLBACK_MODEL_TIMEOUT = "model_timeout"
FALLBACK_MODEL_DISABLED = "model_disabled"

# How often a waiter polls the cache while another process holds the lock.
_LOCK_POLL_INTERVAL = 0.25


@dataclass(frozen=True)
class QuotaUsage:
    rule_id: int
    day: str
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


def copy_fingerprint(listing: Listing, style_directive: str | None, model_id: str) -> str:
    """Content fingerprint; any change to copy-relevant fields yields a new one."""
    return _hash_key(
        listing.title,
        f"{listing.current_price:.2f}",
        str(listing.discount),
        (style_directive or "").strip(),
        model_id,
    )


def _with_link(text: str, link: str) -> str:
    if link in text:
        return text
    return f"{text}\n\n👉 {link}"


class CopyGenerator:
    """Produces outbound copy for (listing, rule) pairs."""

    def __init__(
        self,
        store: CopyStore,
        provider: CopyProvider | None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.provider = provider
        self.clock = clock or SystemClock(self.settings.quota_timezone)
        self._inflight: dict[str, asyncio.Future[CopyResult]] = {}

    async def generate(self, listing: Listing, rule: AutomationRule) -> CopyResult:
        """Produce copy for a matched rule. Degraded paths return FALLBACK results.

        Args:
            listing: Scored listing.
            rule: Matched rule (copy mode, plan, affiliate tag).

        Returns:
            CopyResult with text, source and, for fallbacks, the reason.
        """
        link = build_listing_link(listing, rule.affiliate_tag)
        mode = rule.copy_mode

        if isinstance(mode, TemplateMode):
            return CopyResult(text=render_template(mode.template, listing, link), source=CopySource.TEMPLATE)

        model_id = mode.model_id or self.settings.openai_model_copy
        fingerprint = copy_fingerprint(listing, mode.style_directive, model_id)

        cached = await self.store.get_copy(rule.id, listing.external_id, fingerprint)
        if cached:
            logger.info(f"[copy] cache HIT rule={rule.id} listing={listing.external_id}")
            return CopyResult(text=cached, source=CopySource.CACHED, fingerprint=fingerprint)

        if self.provider is None:
            logger.info(f"[copy] model disabled, using template rule={rule.id}")
            return self._fallback(listing, mode, link, fingerprint, FALLBACK_MODEL_DISABLED)

        key = copy_key(rule.id, listing.external_id, fingerprint)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._generate_uncached(listing, rule, mode, link, model_id, fingerprint))
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        else:
            logger.info(f"[copy] joining in-flight generation rule={rule.id} listing={listing.external_id}")
        # Shielded so one cancelled caller does not cancel the shared generation.
        return await asyncio.shield(task)

    def _lock_ttl(self) -> int:
        # The lock must outlive the model call it guards.
        return max(self.settings.copy_lock_ttl_seconds, math.ceil(self.settings.llm_timeout_seconds) + 5)

    async def _generate_uncached(
        self,
        listing: Listing,
        rule: AutomationRule,
        mode: GeneratedMode,
        link: str,
        model_id: str,
        fingerprint: str,
    ) -> CopyResult:
        lock_key = copy_key(rule.id, listing.external_id, fingerprint)
        got_lock = await self.store.acquire_lock(lock_key, ttl=self._lock_ttl())
        if not got_lock:
            return await self._wait_for_other_worker(listing, rule, mode, link, fingerprint)

        try:
            # Re-check cache after lock acquisition.
            cached = await self.store.get_copy(rule.id, listing.external_id, fingerprint)
            if cached:
                return CopyResult(text=cached, source=CopySource.CACHED, fingerprint=fingerprint)

            day = day_key(self.clock)
            limit = self.settings.quota_for_plan(rule.plan)
            slot = await self.store.reserve_quota(rule.id, day, limit, ttl=seconds_until_end_of_day(self.clock))
            if slot is None:
                logger.warning(f"[copy] quota exhausted rule={rule.id} plan={rule.plan} limit={limit} day={day}")
                return self._fallback(listing, mode, link, fingerprint, FALLBACK_QUOTA_EXHAUSTED)

            logger.info(f"[copy] cache MISS, calling model={model_id} rule={rule.id} slot={slot}/{limit}")
            prompt = build_copy_prompt(listing, mode.style_directive)
            try:
                text = await asyncio.wait_for(
                    self.provider.complete(prompt, model_id),
                    timeout=self.settings.llm_timeout_seconds,
                )
            except asyncio.TimeoutError:
                await self.store.release_quota(rule.id, day)
                logger.warning(
                    f"[copy] model TIMEOUT after {self.settings.llm_timeout_seconds}s rule={rule.id} model={model_id}"
                )
                return self._fallback(listing, mode, link, fingerprint, FALLBACK_MODEL_TIMEOUT)
            except Exception as e:
                await self.store.release_quota(rule.id, day)
                logger.warning(f"[copy] model FAILED rule={rule.id} model={model_id}: {e}")
                return self._fallback(listing, mode, link, fingerprint, FALLBACK_MODEL_ERROR)

            text = (text or "").strip()
            if not text:
                await self.store.release_quota(rule.id, day)
                logger.warning(f"[copy] model returned empty text rule={rule.id} model={model_id}")
                return self._fallback(listing, mode, link, fingerprint, FALLBACK_MODEL_ERROR)

            text = _with_link(text, link)
            await self.store.set_copy(
                rule.id, listing.external_id, fingerprint, text, ttl=self.settings.copy_cache_ttl_seconds
            )
            return CopyResult(text=text, source=CopySource.GENERATED, fingerprint=fingerprint)
        finally:
            await self.store.release_lock(lock_key)

    async def _wait_for_other_worker(
        self,
        listing: Listing,
        rule: AutomationRule,
        mode: GeneratedMode,
        link: str,
        fingerprint: str,
    ) -> CopyResult:
        """Another process is generating the same copy; wait for its cache write."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.llm_timeout_seconds
        while loop.time() < deadline:
            await asyncio.sleep(_LOCK_POLL_INTERVAL)
            cached = await self.store.get_copy(rule.id, listing.external_id, fingerprint)
            if cached:
                return CopyResult(text=cached, source=CopySource.CACHED, fingerprint=fingerprint)
        logger.warning(f"[copy] gave up waiting for in-flight generation rule={rule.id} listing={listing.external_id}")
        return self._fallback(listing, mode, link, fingerprint, FALLBACK_MODEL_TIMEOUT)

    def _fallback(
        self,
        listing: Listing,
        mode: GeneratedMode,
        link: str,
        fingerprint: str,
        reason: str,
    ) -> CopyResult:
        return CopyResult(
            text=render_template(mode.template, listing, link),
            source=CopySource.FALLBACK,
            fingerprint=fingerprint,
            fallback_reason=reason,
        )

    async def usage(self, rule_id: int, plan: str | None) -> QuotaUsage:
        """Today's generation count and limit for a rule."""
        day = day_key(self.clock)
        used = await self.store.get_usage(rule_id, day)
        return QuotaUsage(rule_id=rule_id, day=day, used=used, limit=self.settings.quota_for_plan(plan))

    async def reset_quota(self, rule_id: int | None, all_days: bool = False) -> int:
        """Reset a rule's counter for today (or every day); None means every rule."""
        day = None if all_days else day_key(self.clock)
        deleted = await self.store.reset_quota(rule_id, day)
        logger.info(f"[copy] quota reset rule={rule_id if rule_id is not None else '*'} day={day or '*'} keys={deleted}")
        return deleted

    async def invalidate(self, rule_id: int | None, listing_id: str | None = None) -> int:
        """Drop cached copy for a rule (optionally one listing) so it regenerates."""
        deleted = await self.store.invalidate_copy(rule_id, listing_id)
        logger.info(f"[copy] cache invalidated rule={rule_id if rule_id is not None else '*'} listing={listing_id or '*'} keys={deleted}")
        return deleted


def get_copy_generator() -> CopyGenerator:
    """Generator wired to the configured store and provider."""
    return CopyGenerator(store=get_copy_store(), provider=get_copy_provider())
