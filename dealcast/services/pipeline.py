"""Deal pipeline: poll → score → match → generate copy → dispatch.

Per-listing work fans out with bounded concurrency; within a listing each
matched rule runs independently (their only shared state is the copy store).
Within one (listing, rule) the stages always run in order.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from dealcast.domain import AutomationRule, ChannelTarget, Listing, ListingOutcome
from dealcast.models import AutomationRule as RuleRow
from dealcast.services.copywriter import CopyGenerator, get_copy_generator
from dealcast.services.dispatcher import PublishDispatcher
from dealcast.services.ingestion import IngestionStats, MarketplaceSource, ScoredListing, poll_listings
from dealcast.services.keepa_client import DealQuery
from dealcast.services.matcher import match_rules
from dealcast.services.scoring import ScoringConfig, calculate_deal_score, score_label
from dealcast.settings import get_settings
from dealcast.stores.copy_store import CopyStore, get_copy_store
from dealcast.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")


@dataclass
class PipelineReport:
    """Summary of one cycle, surfaced to the admin API and cron logs."""

    ingestion: IngestionStats | None = None
    listings: int = 0
    matched_pairs: int = 0
    copy_sources: Counter = field(default_factory=Counter)
    fallback_reasons: Counter = field(default_factory=Counter)
    published: int = 0
    failed: int = 0
    errors: int = 0
    already_posted: int = 0
    capped: int = 0
    score_labels: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict:
        return {
            "ingestion": vars(self.ingestion) if self.ingestion else None,
            "listings": self.listings,
            "matched_pairs": self.matched_pairs,
            "copy_sources": dict(self.copy_sources),
            "fallback_reasons": dict(self.fallback_reasons),
            "published": self.published,
            "failed": self.failed,
            "errors": self.errors,
            "already_posted": self.already_posted,
            "capped": self.capped,
            "score_labels": dict(self.score_labels),
        }


async def load_active_rules(session: AsyncSession) -> list[AutomationRule]:
    """Active rules with their tenant attributes. Rules without channels are skipped."""
    result = await session.execute(
        select(RuleRow).options(selectinload(RuleRow.tenant)).where(RuleRow.active.is_(True))
    )
    rules: list[AutomationRule] = []
    for row in result.scalars().all():
        rule = row.to_domain()
        if not rule.channels:
            logger.warning(f"Rule {rule.id} is active but has no channels; skipping")
            continue
        rules.append(rule)
    return rules


def _channel_key(target: ChannelTarget) -> str:
    return f"{target.kind}:{target.channel_id}"


class DealPipeline:
    def __init__(
        self,
        copy_generator: CopyGenerator | None = None,
        dispatcher: PublishDispatcher | None = None,
        scoring: ScoringConfig | None = None,
        max_concurrency: int | None = None,
        history: CopyStore | None = None,
        max_deals_per_rule: int | None = None,
        dedupe_hours: int | None = None,
    ):
        settings = get_settings()
        self.copy_generator = copy_generator or get_copy_generator()
        self.dispatcher = dispatcher or PublishDispatcher()
        self.scoring = scoring or ScoringConfig.from_settings()
        self.max_concurrency = max_concurrency or settings.pipeline_max_concurrency
        self.max_deals_per_rule = max_deals_per_rule or settings.pipeline_max_deals_per_rule
        if dedupe_hours is None:
            dedupe_hours = settings.publish_dedupe_hours
        self.dedupe_ttl = dedupe_hours * 3600
        self.history = history or get_copy_store()

    async def _unposted_channels(
        self, listing: Listing, rule: AutomationRule, outcome: ListingOutcome
    ) -> list[ChannelTarget]:
        if self.dedupe_ttl <= 0:
            return list(rule.channels)
        pending: list[ChannelTarget] = []
        for target in rule.channels:
            if await self.history.was_published(rule.id, _channel_key(target), listing.external_id):
                outcome.already_posted += 1
            else:
                pending.append(target)
        return pending

    async def _process_rule(self, listing: Listing, rule: AutomationRule, outcome: ListingOutcome) -> None:
        channels = await self._unposted_channels(listing, rule, outcome)
        if rule.channels and not channels:
            logger.info(f"[pipeline] rule={rule.id} listing={listing.external_id} already posted, skipping")
            return

        copy = await self.copy_generator.generate(listing, rule)
        outcome.copies[rule.id] = copy
        if copy.is_fallback:
            logger.info(f"[pipeline] rule={rule.id} listing={listing.external_id} fallback={copy.fallback_reason}")
        attempts = await self.dispatcher.dispatch(copy, listing, rule, channels)
        outcome.attempts.extend(attempts)
        if self.dedupe_ttl <= 0:
            return
        # Only successful posts count; a failed channel is tried again next cycle.
        for attempt in attempts:
            if attempt.success:
                await self.history.mark_published(
                    rule.id,
                    _channel_key(attempt.channel),
                    listing.external_id,
                    attempt.external_message_id or "",
                    ttl=self.dedupe_ttl,
                )

    async def process_listing(
        self,
        listing: Listing,
        rules: list[AutomationRule],
        score: int | None = None,
    ) -> ListingOutcome:
        """Score (unless given), match and publish one listing."""
        if score is None:
            score = calculate_deal_score(listing, self.scoring)
        matched = match_rules(listing, score, rules)
        outcome = ListingOutcome(listing=listing, score=score, matched_rule_ids=[r.id for r in matched])
        if not matched:
            return outcome
        logger.info(
            f"[pipeline] listing={listing.external_id} score={score} ({score_label(score)}) "
            f"rules={outcome.matched_rule_ids}"
        )

        results = await asyncio.gather(
            *(self._process_rule(listing, rule, outcome) for rule in matched),
            return_exceptions=True,
        )
        for rule, res in zip(matched, results):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                logger.error(
                    f"[pipeline] rule={rule.id} listing={listing.external_id} failed: {type(res).__name__}: {res}"
                )
                outcome.errors += 1
        return outcome

    async def run(self, scored: list[ScoredListing], rules: list[AutomationRule]) -> PipelineReport:
        """Fan out over scored listings with bounded concurrency.

        Each rule takes at most `max_deals_per_rule` listings per cycle, highest
        score first.
        """
        report = PipelineReport(listings=len(scored))
        if not scored or not rules:
            return report

        ranked = sorted(scored, key=lambda s: s.score, reverse=True)
        taken: Counter = Counter()
        allowed_rules: list[list[AutomationRule]] = []
        for item in ranked:
            report.score_labels[score_label(item.score)] += 1
            matched = match_rules(item.listing, item.score, rules)
            allowed = [r for r in matched if taken[r.id] < self.max_deals_per_rule]
            taken.update(r.id for r in allowed)
            report.capped += len(matched) - len(allowed)
            allowed_rules.append(allowed)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _one(item: ScoredListing, allowed: list[AutomationRule]) -> ListingOutcome:
            async with semaphore:
                return await self.process_listing(item.listing, allowed, score=item.score)

        results = await asyncio.gather(
            *(_one(item, allowed) for item, allowed in zip(ranked, allowed_rules)),
            return_exceptions=True,
        )
        for item, res in zip(ranked, results):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                report.errors += 1
                logger.error(f"[pipeline] listing={item.listing.external_id} failed: {type(res).__name__}: {res}")
                continue
            report.matched_pairs += len(res.matched_rule_ids)
            report.errors += res.errors
            report.already_posted += res.already_posted
            for copy in res.copies.values():
                report.copy_sources[copy.source.value] += 1
                if copy.fallback_reason:
                    report.fallback_reasons[copy.fallback_reason] += 1
            for attempt in res.attempts:
                if attempt.success:
                    report.published += 1
                else:
                    report.failed += 1
        return report


async def run_cycle(
    source: MarketplaceSource | None = None,
    query: DealQuery | None = None,
    pipeline: DealPipeline | None = None,
) -> PipelineReport:
    """One full cycle: poll the source, then publish matches.

    Raises:
        SourceUnavailableError: the poll failed (nothing written or published).
    """
    pipeline = pipeline or DealPipeline()
    ingestion = await poll_listings(source=source, query=query, scoring=pipeline.scoring)

    async with get_session() as session:
        rules = await load_active_rules(session)

    report = await pipeline.run(ingestion.listings, rules)
    report.ingestion = ingestion.stats
    logger.info(
        f"[pipeline] cycle done: listings={report.listings} rules={len(rules)} matched={report.matched_pairs} "
        f"sources={dict(report.copy_sources)} published={report.published} failed={report.failed} "
        f"errors={report.errors} already_posted={report.already_posted} capped={report.capped}"
    )
    return report
