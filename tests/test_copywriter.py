"""Copy generation: caching, daily quotas, fallbacks and single-flight."""

import asyncio
from datetime import datetime, timezone

from conftest import FakeProvider, make_listing, make_rule

from dealcast.clock import FixedClock
from dealcast.domain import CopySource, GeneratedMode, TemplateMode
from dealcast.services.copywriter import (
    FALLBACK_MODEL_DISABLED,
    FALLBACK_MODEL_ERROR,
    FALLBACK_MODEL_TIMEOUT,
    FALLBACK_QUOTA_EXHAUSTED,
    CopyGenerator,
    copy_fingerprint,
)
from dealcast.services.llm_client import LlmError
from dealcast.settings import get_settings
from dealcast.stores.copy_store import MemoryCopyStore, RedisCopyStore

NOON = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _settings(**update):
    return get_settings().model_copy(update=update)


def _generated_rule(**overrides):
    data = dict(
        copy_mode=GeneratedMode(style_directive="Playful", model_id="test-model", template="{{title}} deal"),
        plan="PRO",
    )
    data.update(overrides)
    return make_rule(**data)


def _generator(provider, store=None, clock=None, **settings_update):
    return CopyGenerator(
        store=store or MemoryCopyStore(),
        provider=provider,
        clock=clock or FixedClock(NOON),
        settings=_settings(**settings_update),
    )


async def test_template_mode_renders_without_model_or_quota() -> None:
    provider = FakeProvider()
    store = MemoryCopyStore()
    gen = _generator(provider, store)
    rule = make_rule(copy_mode=TemplateMode("{{title}} -{{discount}}%"))

    result = await gen.generate(make_listing(title="Mixer"), rule)

    assert result.source == CopySource.TEMPLATE
    assert result.text == "Mixer -50%"
    assert provider.calls == 0
    assert await store.get_usage(rule.id, "2026-05-01") == 0


async def test_second_request_is_served_from_cache() -> None:
    provider = FakeProvider(text="Half price headphones.")
    store = MemoryCopyStore()
    gen = _generator(provider, store)
    rule = _generated_rule()
    listing = make_listing()

    first = await gen.generate(listing, rule)
    second = await gen.generate(listing, rule)

    assert first.source == CopySource.GENERATED
    assert second.source == CopySource.CACHED
    assert second.text == first.text
    assert provider.calls == 1
    assert await store.get_usage(rule.id, "2026-05-01") == 1


async def test_generated_text_gets_the_listing_link() -> None:
    gen = _generator(FakeProvider(text="Nice."))
    rule = _generated_rule(affiliate_tag="shop-21")
    result = await gen.generate(make_listing(external_id="B0LINK0001"), rule)
    assert result.text.startswith("Nice.")
    assert "https://www.amazon.it/dp/B0LINK0001?tag=shop-21" in result.text


async def test_exhausted_quota_falls_back_without_calling_model() -> None:
    provider = FakeProvider()
    store = MemoryCopyStore()
    gen = _generator(provider, store, plan_daily_quotas={"PRO": 1})
    rule = _generated_rule()

    first = await gen.generate(make_listing(external_id="A"), rule)
    second = await gen.generate(make_listing(external_id="B", title="Toaster"), rule)

    assert first.source == CopySource.GENERATED
    assert second.source == CopySource.FALLBACK
    assert second.fallback_reason == FALLBACK_QUOTA_EXHAUSTED
    assert second.text == "Toaster deal"
    assert provider.calls == 1


async def test_free_plan_has_no_generation_budget() -> None:
    provider = FakeProvider()
    gen = _generator(provider)
    result = await gen.generate(make_listing(), _generated_rule(plan="FREE"))
    assert result.fallback_reason == FALLBACK_QUOTA_EXHAUSTED
    assert provider.calls == 0


async def test_price_change_produces_new_fingerprint() -> None:
    provider = FakeProvider()
    gen = _generator(provider)
    rule = _generated_rule()

    before = await gen.generate(make_listing(current_price=100.0), rule)
    after = await gen.generate(make_listing(current_price=90.0), rule)

    assert before.fingerprint != after.fingerprint
    assert after.source == CopySource.GENERATED
    assert provider.calls == 2


def test_fingerprint_depends_on_style_and_model() -> None:
    listing = make_listing()
    base = copy_fingerprint(listing, "Playful", "m1")
    assert base == copy_fingerprint(listing, "Playful", "m1")
    assert base != copy_fingerprint(listing, "Formal", "m1")
    assert base != copy_fingerprint(listing, "Playful", "m2")


async def test_model_error_falls_back_and_keeps_quota() -> None:
    store = MemoryCopyStore()
    gen = _generator(FakeProvider(error=LlmError("boom")), store)
    rule = _generated_rule()

    result = await gen.generate(make_listing(), rule)

    assert result.source == CopySource.FALLBACK
    assert result.fallback_reason == FALLBACK_MODEL_ERROR
    assert await store.get_usage(rule.id, "2026-05-01") == 0


async def test_model_timeout_falls_back_and_keeps_quota() -> None:
    store = MemoryCopyStore()
    gen = _generator(FakeProvider(delay=1.0), store, llm_timeout_seconds=0.05)
    rule = _generated_rule()

    result = await gen.generate(make_listing(), rule)

    assert result.fallback_reason == FALLBACK_MODEL_TIMEOUT
    assert await store.get_usage(rule.id, "2026-05-01") == 0
    assert await store.get_copy(rule.id, "B0TEST0001", result.fingerprint) is None


async def test_disabled_provider_uses_template() -> None:
    gen = _generator(None)
    result = await gen.generate(make_listing(title="Drill"), _generated_rule())
    assert result.fallback_reason == FALLBACK_MODEL_DISABLED
    assert result.text == "Drill deal"


async def test_fallback_without_template_uses_default_message() -> None:
    gen = _generator(None)
    rule = _generated_rule(copy_mode=GeneratedMode(style_directive=None, template=None))
    result = await gen.generate(make_listing(title="Drill"), rule)
    assert result.text.startswith("🔥 Drill")


async def test_concurrent_identical_requests_make_one_model_call() -> None:
    provider = FakeProvider(delay=0.05)
    store = MemoryCopyStore()
    gen = _generator(provider, store)
    rule = _generated_rule()
    listing = make_listing()

    results = await asyncio.gather(*[gen.generate(listing, rule) for _ in range(5)])

    assert provider.calls == 1
    assert await store.get_usage(rule.id, "2026-05-01") == 1
    assert len({r.text for r in results}) == 1
    assert all(not r.is_fallback for r in results)


async def test_slow_model_outlives_short_lock_setting() -> None:
    provider = FakeProvider(delay=1.5)
    store = MemoryCopyStore()
    first = _generator(provider, store, copy_lock_ttl_seconds=1, llm_timeout_seconds=5.0)
    second = _generator(provider, store, copy_lock_ttl_seconds=1, llm_timeout_seconds=5.0)
    rule = _generated_rule()
    listing = make_listing()

    async def late_worker():
        await asyncio.sleep(1.1)
        return await second.generate(listing, rule)

    a, b = await asyncio.gather(first.generate(listing, rule), late_worker())

    assert provider.calls == 1
    assert (await second.usage(rule.id, rule.plan)).used == 1
    assert a.source == CopySource.GENERATED
    assert b.source == CopySource.CACHED
    assert a.text == b.text


async def test_concurrent_distinct_listings_share_quota() -> None:
    provider = FakeProvider(delay=0.02)
    gen = _generator(provider, plan_daily_quotas={"PRO": 1})
    rule = _generated_rule()

    results = await asyncio.gather(
        gen.generate(make_listing(external_id="A"), rule),
        gen.generate(make_listing(external_id="B"), rule),
    )

    sources = sorted(r.source.value for r in results)
    assert sources == ["fallback", "generated"]
    assert provider.calls == 1


async def test_quota_resets_on_next_day() -> None:
    provider = FakeProvider()
    clock = FixedClock(datetime(2026, 5, 1, 23, 59, tzinfo=timezone.utc))
    store = MemoryCopyStore()
    gen = _generator(provider, store, clock=clock, plan_daily_quotas={"PRO": 1})
    rule = _generated_rule()

    assert (await gen.generate(make_listing(external_id="A"), rule)).source == CopySource.GENERATED
    assert (await gen.generate(make_listing(external_id="B"), rule)).is_fallback

    clock.advance(minutes=2)
    result = await gen.generate(make_listing(external_id="C"), rule)
    assert result.source == CopySource.GENERATED
    assert (await gen.usage(rule.id, rule.plan)).used == 1


async def test_usage_reset_and_invalidate() -> None:
    provider = FakeProvider()
    store = MemoryCopyStore()
    gen = _generator(provider, store, plan_daily_quotas={"PRO": 3})
    rule = _generated_rule()
    listing = make_listing()

    await gen.generate(listing, rule)
    usage = await gen.usage(rule.id, rule.plan)
    assert (usage.used, usage.limit, usage.remaining) == (1, 3, 2)

    assert await gen.reset_quota(rule.id) == 1
    assert (await gen.usage(rule.id, rule.plan)).used == 0

    assert await gen.invalidate(rule.id, listing.external_id) == 1
    result = await gen.generate(listing, rule)
    assert result.source == CopySource.GENERATED
    assert provider.calls == 2


async def test_redis_backed_generation(fake_redis) -> None:
    provider = FakeProvider(delay=0.02)
    store = RedisCopyStore()
    gen = _generator(provider, store)
    rule = _generated_rule()

    results = await asyncio.gather(*[gen.generate(make_listing(), rule) for _ in range(3)])

    assert provider.calls == 1
    assert {r.source for r in results} == {CopySource.GENERATED}
    assert await store.get_usage(rule.id, "2026-05-01") == 1
    again = await gen.generate(make_listing(), rule)
    assert again.source == CopySource.CACHED
