"""Pipeline tests: full poll → score → match → copy → publish cycles."""

from datetime import datetime, timezone

from conftest import FakeProvider, RecordingPublisher, make_listing, make_rule

from dealcast.channels import ChannelRegistry
from dealcast.clock import FixedClock
from dealcast.domain import ChannelTarget, CopySource, GeneratedMode
from dealcast.models import AutomationRule as RuleRow
from dealcast.models import Tenant
from dealcast.models.rule import COPY_MODE_GENERATED, COPY_MODE_TEMPLATE
from dealcast.services.copywriter import FALLBACK_QUOTA_EXHAUSTED, CopyGenerator
from dealcast.services.dispatcher import PublishDispatcher
from dealcast.services.keepa_client import DealQuery
from dealcast.services.ingestion import ScoredListing
from dealcast.services.pipeline import DealPipeline, load_active_rules, run_cycle
from dealcast.settings import get_settings
from dealcast.stores.copy_store import MemoryCopyStore
from dealcast.stores.postgres import get_session

TODAY = "2026-05-01"


class OneDealSource:
    async def fetch_page(self, query, page):
        if page > 0:
            return []
        current = [-1] * 18
        current[0], current[4], current[16], current[17] = 10000, 20000, 47, 1200
        return [{"asin": "B0E2E00001", "title": "Noise Cancelling Headphones", "rootCat": 123, "current": current}]


def _pipeline(publisher, provider=None, store=None, max_deals_per_rule=None, dedupe_hours=None, **settings_update):
    settings = get_settings().model_copy(update=settings_update)
    store = store or MemoryCopyStore()
    generator = CopyGenerator(
        store=store,
        provider=provider,
        clock=FixedClock(datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)),
        settings=settings,
    )
    dispatcher = PublishDispatcher(ChannelRegistry({"log": publisher, "telegram": publisher}))
    return DealPipeline(
        copy_generator=generator,
        dispatcher=dispatcher,
        max_concurrency=2,
        history=store,
        max_deals_per_rule=max_deals_per_rule,
        dedupe_hours=dedupe_hours,
    )


async def _seed(plan="PRO", **rule_fields) -> int:
    async with get_session() as session:
        tenant = Tenant(name="Acme", plan=plan, affiliate_tag="acme-21")
        session.add(tenant)
        await session.flush()
        rule = RuleRow(tenant_id=tenant.id, name="e2e", active=True, **rule_fields)
        session.add(rule)
        await session.flush()
        return rule.id


async def test_template_rule_publishes_half_price_listing(db) -> None:
    await _seed(
        min_score=60,
        category_ids=[123],
        copy_mode=COPY_MODE_TEMPLATE,
        message_template="{{title}} now {{discount}}% off!",
        channels=[ChannelTarget("log", "deals")],
    )
    publisher = RecordingPublisher()

    report = await run_cycle(OneDealSource(), DealQuery(max_pages=2), _pipeline(publisher))

    assert report.ingestion.new_listings == 1
    assert report.matched_pairs == 1
    assert report.copy_sources == {"template": 1}
    assert report.published == 1
    assert publisher.calls == [
        ("deals", "Noise Cancelling Headphones now 50% off!", None),
    ]


async def test_generated_rule_over_quota_still_publishes_everywhere(db) -> None:
    rule_id = await _seed(
        copy_mode=COPY_MODE_GENERATED,
        style_directive="Short and upbeat",
        channels=[ChannelTarget("log", "a"), ChannelTarget("telegram", "@b")],
    )
    store = MemoryCopyStore()
    await store.reserve_quota(rule_id, TODAY, limit=2, ttl=3600)
    await store.reserve_quota(rule_id, TODAY, limit=2, ttl=3600)
    provider = FakeProvider()
    publisher = RecordingPublisher()

    report = await run_cycle(
        OneDealSource(),
        DealQuery(max_pages=1),
        _pipeline(publisher, provider=provider, store=store, plan_daily_quotas={"PRO": 2}),
    )

    assert provider.calls == 0
    assert report.fallback_reasons == {FALLBACK_QUOTA_EXHAUSTED: 1}
    assert sorted(c[0] for c in publisher.calls) == ["@b", "a"]
    texts = {c[1] for c in publisher.calls}
    assert len(texts) == 1
    text = texts.pop()
    assert text.strip()
    assert "Noise Cancelling Headphones" in text
    assert "https://www.amazon.it/dp/B0E2E00001?tag=acme-21" in text
    assert report.published == 2


async def test_load_active_rules_skips_inactive_and_channelless(db) -> None:
    kept = await _seed(channels=[ChannelTarget("log", "x")])
    async with get_session() as session:
        session.add(RuleRow(tenant_id=1, name="off", active=False, channels=[ChannelTarget("log", "x")]))
        session.add(RuleRow(tenant_id=1, name="nowhere", active=True, channels=[]))

    async with get_session() as session:
        rules = await load_active_rules(session)

    assert [r.id for r in rules] == [kept]
    assert rules[0].plan == "PRO"
    assert rules[0].affiliate_tag == "acme-21"


async def test_listing_without_matches_publishes_nothing() -> None:
    publisher = RecordingPublisher()
    outcome = await _pipeline(publisher).process_listing(make_listing(), [make_rule(min_score=101)])
    assert outcome.matched_rule_ids == []
    assert publisher.calls == []


async def test_each_matched_rule_gets_its_own_copy() -> None:
    publisher = RecordingPublisher()
    provider = FakeProvider(text="Generated line.")
    template_rule = make_rule(id=1, priority=1)
    generated_rule = make_rule(id=2, priority=2, copy_mode=GeneratedMode(style_directive="Calm"))

    outcome = await _pipeline(publisher, provider=provider).process_listing(
        make_listing(), [generated_rule, template_rule]
    )

    assert outcome.matched_rule_ids == [1, 2]
    assert outcome.copies[1].source == CopySource.TEMPLATE
    assert outcome.copies[2].source == CopySource.GENERATED
    assert len(outcome.attempts) == 2


async def test_rule_failure_is_isolated() -> None:
    class ExplodingGenerator:
        async def generate(self, listing, rule):
            if rule.id == 1:
                raise RuntimeError("store down")
            return await healthy.generate(listing, rule)

    publisher = RecordingPublisher()
    healthy = _pipeline(publisher).copy_generator
    pipeline = DealPipeline(
        copy_generator=ExplodingGenerator(),
        dispatcher=PublishDispatcher(ChannelRegistry({"log": publisher})),
        history=MemoryCopyStore(),
    )

    outcome = await pipeline.process_listing(make_listing(), [make_rule(id=1), make_rule(id=2)])

    assert outcome.errors == 1
    assert outcome.matched_rule_ids == [1, 2]
    assert len(publisher.calls) == 1


async def test_unchanged_listing_is_posted_once() -> None:
    publisher = RecordingPublisher()
    pipeline = _pipeline(publisher)
    listing, rule = make_listing(), make_rule()

    outcomes = [await pipeline.process_listing(listing, [rule]) for _ in range(3)]

    assert len(publisher.calls) == 1
    assert outcomes[0].attempts[0].success is True
    assert outcomes[2].already_posted == 1
    assert outcomes[2].copies == {}
    assert outcomes[2].attempts == []


async def test_rejected_post_is_retried_on_next_cycle() -> None:
    ok = RecordingPublisher()
    rejecting = RecordingPublisher(success=False)
    store = MemoryCopyStore()
    dispatcher = PublishDispatcher(ChannelRegistry({"log": ok, "telegram": rejecting}))
    generator = _pipeline(ok, store=store).copy_generator
    pipeline = DealPipeline(copy_generator=generator, dispatcher=dispatcher, history=store)
    rule = make_rule(channels=(ChannelTarget("log", "a"), ChannelTarget("telegram", "@b")))

    await pipeline.process_listing(make_listing(), [rule])
    second = await pipeline.process_listing(make_listing(), [rule])

    assert len(ok.calls) == 1
    assert len(rejecting.calls) == 2
    assert second.already_posted == 1
    assert [a.channel.kind for a in second.attempts] == ["telegram"]


async def test_same_listing_goes_to_each_rule_separately() -> None:
    publisher = RecordingPublisher()
    pipeline = _pipeline(publisher)

    await pipeline.process_listing(make_listing(), [make_rule(id=1)])
    await pipeline.process_listing(make_listing(), [make_rule(id=2)])

    assert len(publisher.calls) == 2


async def test_zero_window_disables_repost_protection() -> None:
    publisher = RecordingPublisher()
    pipeline = _pipeline(publisher, dedupe_hours=0)

    for _ in range(2):
        await pipeline.process_listing(make_listing(), [make_rule()])

    assert len(publisher.calls) == 2


async def test_each_rule_publishes_only_its_top_deals_per_cycle() -> None:
    publisher = RecordingPublisher()
    pipeline = _pipeline(publisher, max_deals_per_rule=2)
    scored = [
        ScoredListing(make_listing(external_id="LOW", title="Low"), 55),
        ScoredListing(make_listing(external_id="TOP", title="Top"), 90),
        ScoredListing(make_listing(external_id="MID", title="Mid"), 75),
    ]

    report = await pipeline.run(scored, [make_rule()])

    assert sorted(c[1].split()[0] for c in publisher.calls) == ["Mid", "Top"]
    assert report.published == 2
    assert report.capped == 1
    assert report.matched_pairs == 2
    assert report.score_labels == {"HOT": 1, "GREAT": 1, "GOOD": 1}
    assert report.to_dict()["capped"] == 1
