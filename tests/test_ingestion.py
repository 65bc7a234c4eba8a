"""Ingestion: Keepa record normalization and the poll/upsert cycle."""

import pytest
from sqlalchemy import func, select

from dealcast.models import Listing as ListingRow
from dealcast.services.ingestion import (
    InvalidPriceError,
    MalformedRecordError,
    MissingIdentifierError,
    normalize_deal,
    poll_listings,
)
from dealcast.services.keepa_client import DealQuery, SourceUnavailableError
from dealcast.stores.postgres import get_session


def _current(amazon=-1, new=-1, rank=-1, list_price=-1, rating=-1, reviews=-1) -> list[int]:
    values = [-1] * 18
    values[0], values[1], values[3], values[4] = amazon, new, rank, list_price
    values[16], values[17] = rating, reviews
    return values


def _deal(asin="B0DEAL0001", **current) -> dict:
    return {
        "asin": asin,
        "title": f"Deal {asin}",
        "rootCat": 412609031,
        "current": _current(**current),
    }


class FakeSource:
    """Serves pre-baked pages; optionally fails on a given page."""

    def __init__(self, pages, fail_on_page=None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.requested: list[int] = []

    async def fetch_page(self, query, page):
        self.requested.append(page)
        if page == self.fail_on_page:
            raise SourceUnavailableError("HTTP 503")
        return self.pages[page] if page < len(self.pages) else []


# ============================================================
# normalize_deal
# ============================================================


def test_normalizes_prices_and_signals() -> None:
    listing = normalize_deal(_deal(amazon=10000, list_price=20000, rank=1500, rating=47, reviews=1200))
    assert listing.external_id == "B0DEAL0001"
    assert listing.current_price == 100.0
    assert listing.original_price == 200.0
    assert listing.discount == 50
    assert listing.sales_rank == 1500
    assert listing.rating == 4.7
    assert listing.review_count == 1200
    assert listing.category_id == 412609031


def test_new_offer_price_used_when_amazon_missing() -> None:
    listing = normalize_deal(_deal(new=4999))
    assert listing.current_price == 49.99
    assert listing.original_price is None
    assert listing.rating is None
    assert listing.sales_rank is None


def test_original_price_from_monthly_average() -> None:
    raw = _deal(amazon=6000)
    raw["avg"] = [[-1, -1], [-1, -1], [8000, -1]]
    assert normalize_deal(raw).original_price == 80.0


def test_original_price_rebuilt_from_drop_percent() -> None:
    raw = _deal(amazon=6000)
    raw["deltaPercent"] = [[0, 0], [0, 0], [-40, -1]]
    listing = normalize_deal(raw)
    assert listing.original_price == 100.0
    assert listing.discount == 40


def test_top_level_rating_and_image_char_codes() -> None:
    raw = _deal(amazon=1000)
    raw["rating"] = 45
    raw["reviewCount"] = 12
    raw["image"] = [ord(c) for c in "41abc.jpg"]
    listing = normalize_deal(raw)
    assert listing.rating == 4.5
    assert listing.review_count == 12
    assert listing.image_url == "https://m.media-amazon.com/images/I/41abc.jpg"


def test_missing_title_gets_placeholder() -> None:
    raw = _deal(amazon=1000)
    raw["title"] = None
    assert normalize_deal(raw).title == "Product B0DEAL0001"


def test_rejects_bad_records() -> None:
    with pytest.raises(MissingIdentifierError):
        normalize_deal(_deal(asin="", amazon=1000))
    with pytest.raises(InvalidPriceError):
        normalize_deal(_deal(amazon=-500))
    with pytest.raises(InvalidPriceError):
        normalize_deal(_deal())
    raw = _deal(amazon=1000)
    raw["rootCat"] = "electronics"
    with pytest.raises(MalformedRecordError):
        normalize_deal(raw)
    with pytest.raises(MalformedRecordError):
        normalize_deal(None)


# ============================================================
# poll_listings
# ============================================================


async def _count_listings() -> int:
    async with get_session() as session:
        return (await session.execute(select(func.count(ListingRow.id)))).scalar_one()


async def test_poll_upserts_and_scores(db) -> None:
    source = FakeSource(
        [
            [
                _deal("B01", amazon=10000, list_price=20000, rating=47, reviews=1200),
                _deal("B02", amazon=500),
                _deal("B01", amazon=9000, list_price=20000),
                {"title": "no asin"},
            ],
            [_deal("B03", amazon=-500)],
        ]
    )

    result = await poll_listings(source, DealQuery(max_pages=3))

    stats = result.stats
    assert source.requested == [0, 1, 2]
    assert stats.fetched == 5
    assert stats.duplicates == 1
    assert stats.skipped_no_id == 1
    assert stats.rejected_price == 1
    assert stats.new_listings == 2
    assert {s.listing.external_id for s in result.listings} == {"B01", "B02"}
    first = next(s for s in result.listings if s.listing.external_id == "B01")
    assert first.listing.current_price == 100.0
    assert first.listing.id is not None
    assert first.score >= 70
    assert await _count_listings() == 2


async def test_second_poll_updates_existing_rows(db) -> None:
    await poll_listings(FakeSource([[_deal("B01", amazon=10000, list_price=20000)]]), DealQuery(max_pages=1))
    result = await poll_listings(FakeSource([[_deal("B01", amazon=8000, list_price=20000)]]), DealQuery(max_pages=1))

    assert result.stats.updated_listings == 1
    assert result.stats.new_listings == 0
    async with get_session() as session:
        row = (await session.execute(select(ListingRow).where(ListingRow.external_id == "B01"))).scalar_one()
    assert row.current_price == 80.0
    assert row.discount == 60
    assert row.deal_score == result.listings[0].score
    assert await _count_listings() == 1


async def test_min_reviews_filter_keeps_unknown_counts(db) -> None:
    source = FakeSource(
        [[_deal("B01", amazon=1000, reviews=50), _deal("B02", amazon=1000, reviews=500), _deal("B03", amazon=1000)]]
    )
    result = await poll_listings(source, DealQuery(min_reviews=100, max_pages=1))
    assert result.stats.filtered_reviews == 1
    assert {s.listing.external_id for s in result.listings} == {"B02", "B03"}


async def test_source_failure_writes_nothing(db) -> None:
    source = FakeSource([[_deal("B01", amazon=1000)]], fail_on_page=1)
    with pytest.raises(SourceUnavailableError):
        await poll_listings(source, DealQuery(max_pages=3))
    assert await _count_listings() == 0


async def test_empty_feed_is_a_noop(db) -> None:
    result = await poll_listings(FakeSource([]), DealQuery(max_pages=2))
    assert result.listings == []
    assert result.stats.pages == 1


async def test_non_object_records_do_not_abort_the_batch(db) -> None:
    source = FakeSource([[None, _deal("B01", amazon=1000), "junk", 42]])

    result = await poll_listings(source, DealQuery(max_pages=1))

    assert result.stats.malformed == 3
    assert [s.listing.external_id for s in result.listings] == ["B01"]
    assert await _count_listings() == 1
