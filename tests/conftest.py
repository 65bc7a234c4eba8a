"""Shared fixtures: in-memory database, fake Redis and domain factories."""

import asyncio
from datetime import datetime, timezone

import fakeredis.aioredis
import pytest

from dealcast.domain import AutomationRule, ChannelTarget, Listing, PublishReceipt, TemplateMode
from dealcast.stores import postgres, redis as redis_store


@pytest.fixture
async def db():
    """Fresh in-memory sqlite database with all tables."""
    await postgres.init_db("sqlite+aiosqlite://")
    await postgres.create_tables()
    yield
    await postgres.drop_tables()
    await postgres.close_db()


@pytest.fixture
async def fake_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await redis_store.init_redis(client=client)
    yield client
    await redis_store.close_redis()


def make_listing(**overrides) -> Listing:
    data = dict(
        external_id="B0TEST0001",
        title="Noise Cancelling Headphones",
        current_price=100.0,
        original_price=200.0,
        category_id=123,
        sales_rank=None,
        rating=4.7,
        review_count=1200,
        image_url="https://m.media-amazon.com/images/I/test.jpg",
    )
    data.update(overrides)
    return Listing(**data)


def make_rule(**overrides) -> AutomationRule:
    data = dict(
        id=1,
        tenant_id=1,
        name="rule",
        copy_mode=TemplateMode(template="{{title}} now {{discount}}% off!"),
        channels=(ChannelTarget(kind="log", channel_id="test"),),
        plan="PRO",
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    data.update(overrides)
    return AutomationRule(**data)


class RecordingPublisher:
    """Publisher double that records calls and returns a fixed outcome."""

    def __init__(self, success: bool = True, error: Exception | None = None):
        self.success = success
        self.error = error
        self.calls: list[tuple[str, str, str | None]] = []

    async def publish(self, channel_id: str, text: str, media: str | None = None) -> PublishReceipt:
        self.calls.append((channel_id, text, media))
        if self.error is not None:
            raise self.error
        if not self.success:
            return PublishReceipt(success=False, error="rejected")
        return PublishReceipt(success=True, external_message_id=f"msg-{len(self.calls)}")


class FakeProvider:
    """Copy provider double."""

    def __init__(self, text: str = "Great headphones at half price.", delay: float = 0.0, error: Exception | None = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.calls = 0

    async def complete(self, prompt: str, model_id: str) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text
