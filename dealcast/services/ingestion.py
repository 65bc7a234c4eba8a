"""Ingestion service: Keepa deals feed → normalize → dedup → score → DB.

Flow:
1. Fetch every page of the deals feed (bounded by the query's max pages)
2. Normalize raw records into Listings (bad records are skipped and counted)
3. Deduplicate by ASIN within the batch
4. Upsert into `listings` in a single transaction, caching each deal score

A transport failure during step 1 raises SourceUnavailableError before anything
is written; the next scheduled poll retries with unchanged state.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dealcast.domain import Listing, compute_discount, round_half_up
from dealcast.models import Listing as ListingRow
from dealcast.services.keepa_client import DealQuery, SourceUnavailableError, get_keepa_client
from dealcast.services.scoring import ScoringConfig, calculate_deal_score
from dealcast.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

__all__ = [
    "IngestionResult",
    "IngestionStats",
    "MalformedRecordError",
    "MarketplaceSource",
    "ScoredListing",
    "SourceUnavailableError",
    "normalize_deal",
    "poll_listings",
]

KEEPA_IMAGE_BASE = "https://m.media-amazon.com/images/I/"

# Keepa csv type indexes
_AMAZON, _NEW, _USED, _SALES, _LIST_PRICE = 0, 1, 2, 3, 4
_RATING, _COUNT_REVIEWS = 16, 17
# Keepa range indexes
_DAY, _WEEK, _MONTH, _QUARTER = 0, 1, 2, 3


class MalformedRecordError(ValueError):
    """A raw record could not be normalized."""


class MissingIdentifierError(MalformedRecordError):
    pass


class InvalidPriceError(MalformedRecordError):
    pass


class MarketplaceSource(Protocol):
    async def fetch_page(self, query: DealQuery, page: int) -> list[dict[str, Any]]: ...


@dataclass
class IngestionStats:
    """Statistics from an ingestion run."""

    pages: int = 0
    fetched: int = 0
    skipped_no_id: int = 0
    rejected_price: int = 0
    malformed: int = 0
    filtered_reviews: int = 0
    duplicates: int = 0
    new_listings: int = 0
    updated_listings: int = 0


@dataclass(frozen=True)
class ScoredListing:
    listing: Listing
    score: int


@dataclass
class IngestionResult:
    listings: list[ScoredListing] = field(default_factory=list)
    stats: IngestionStats = field(default_factory=IngestionStats)


# ============================================================
# Normalization
# ============================================================


def _keepa_number(values: Any, idx: int) -> float | None:
    """values[idx] as a number; None when absent, non-numeric or Keepa's -1."""
    if not isinstance(values, (list, tuple)) or idx >= len(values):
        return None
    v = values[idx]
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    if isinstance(v, float) and not math.isfinite(v):
        return None
    if v == -1:
        return None
    return float(v)


def _matrix_number(matrix: Any, ranges: tuple[int, ...], types: tuple[int, ...]) -> float | None:
    """First usable value of matrix[range][type], in preference order."""
    if not isinstance(matrix, (list, tuple)):
        return None
    for r in ranges:
        row = matrix[r] if r < len(matrix) else None
        for t in types:
            v = _keepa_number(row, t)
            if v is not None:
                return v
    return None


def _image_url(image: Any) -> str | None:
    # Keepa sends the image file name as a list of char codes.
    if isinstance(image, list) and image:
        try:
            name = "".join(chr(int(c)) for c in image)
        except (TypeError, ValueError):
            return None
        return f"{KEEPA_IMAGE_BASE}{name}"
    if isinstance(image, str) and image.strip():
        return image if image.startswith("http") else f"{KEEPA_IMAGE_BASE}{image}"
    return None


def normalize_deal(raw: dict[str, Any]) -> Listing:
    """Normalize a raw Keepa deal record.

    Args:
        raw: Keepa deal object.

    Returns:
        Listing with prices in major units.

    Raises:
        MissingIdentifierError: no ASIN.
        InvalidPriceError: no usable or negative current price.
        MalformedRecordError: any other unparseable field.
    """
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"record is not an object: {type(raw).__name__}")
    asin = str(raw.get("asin") or "").strip()
    if not asin:
        raise MissingIdentifierError("record has no asin")

    current = raw.get("current")
    price_cents = None
    for idx in (_AMAZON, _NEW, _USED):
        price_cents = _keepa_number(current, idx)
        if price_cents is not None:
            break
    if price_cents is None:
        raise InvalidPriceError(f"{asin}: no current price")
    if price_cents < 0:
        raise InvalidPriceError(f"{asin}: negative price {price_cents}")

    try:
        # Original price: list price, else 30/90-day average, else rebuilt from the drop %
        original_cents = _keepa_number(current, _LIST_PRICE)
        if original_cents is None or original_cents <= price_cents:
            original_cents = _matrix_number(raw.get("avg"), (_MONTH, _QUARTER), (_AMAZON, _NEW))
        if original_cents is None or original_cents <= price_cents:
            original_cents = None
            delta = _matrix_number(raw.get("deltaPercent"), (_MONTH, _QUARTER, _WEEK, _DAY), (_AMAZON, _NEW))
            drop = max(0, min(99, round_half_up(abs(delta)))) if delta is not None and delta < 0 else 0
            if drop > 0 and price_cents > 0:
                original_cents = round_half_up(price_cents / (1 - drop / 100))

        rating_raw = _keepa_number(current, _RATING)
        if rating_raw is None:
            rating_raw = _keepa_number([raw.get("rating")], 0)
        rating = round(rating_raw / 10.0, 1) if rating_raw is not None and rating_raw >= 0 else None

        reviews_raw = _keepa_number(current, _COUNT_REVIEWS)
        if reviews_raw is None:
            reviews_raw = _keepa_number([raw.get("reviewCount")], 0)
        review_count = int(reviews_raw) if reviews_raw is not None and reviews_raw >= 0 else None

        rank_raw = _keepa_number([raw.get("salesRank")], 0)
        if rank_raw is None:
            rank_raw = _keepa_number(current, _SALES)
        sales_rank = int(rank_raw) if rank_raw is not None and rank_raw > 0 else None

        category_id = raw.get("rootCat") or None
        if category_id is None and isinstance(raw.get("categories"), list) and raw["categories"]:
            category_id = raw["categories"][0]
        category_id = int(category_id) if category_id is not None else None
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedRecordError(f"{asin}: {e}") from e

    title = str(raw.get("title") or "").strip() or f"Product {asin}"
    return Listing(
        external_id=asin,
        title=title,
        current_price=price_cents / 100.0,
        original_price=original_cents / 100.0 if original_cents is not None else None,
        category_id=category_id,
        sales_rank=sales_rank,
        rating=rating,
        review_count=review_count,
        image_url=_image_url(raw.get("image")),
    )


# ============================================================
# Poll cycle
# ============================================================


async def _fetch_all_pages(source: MarketplaceSource, query: DealQuery, stats: IngestionStats) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for page in range(max(1, query.max_pages)):
        batch = await source.fetch_page(query, page)
        stats.pages += 1
        if not batch:
            break
        records.extend(batch)
    stats.fetched = len(records)
    return records


def _normalize_batch(records: list[dict[str, Any]], query: DealQuery, stats: IngestionStats) -> list[Listing]:
    listings: dict[str, Listing] = {}
    for raw in records:
        try:
            listing = normalize_deal(raw)
        except MissingIdentifierError:
            stats.skipped_no_id += 1
            continue
        except InvalidPriceError as e:
            logger.info(f"Rejected record: {e}")
            stats.rejected_price += 1
            continue
        except MalformedRecordError as e:
            logger.warning(f"Malformed record skipped: {e}")
            stats.malformed += 1
            continue

        if query.min_reviews > 0 and listing.review_count is not None and listing.review_count < query.min_reviews:
            stats.filtered_reviews += 1
            continue
        if listing.external_id in listings:
            stats.duplicates += 1
            continue
        listings[listing.external_id] = listing
    return list(listings.values())


async def _upsert_listings(
    session: AsyncSession,
    listings: list[Listing],
    scoring: ScoringConfig,
    stats: IngestionStats,
) -> list[ScoredListing]:
    if not listings:
        return []

    now = datetime.now(timezone.utc)
    ids = [item.external_id for item in listings]
    result = await session.execute(select(ListingRow).where(ListingRow.external_id.in_(ids)))
    existing = {row.external_id: row for row in result.scalars().all()}

    rows: list[tuple[ListingRow, int]] = []
    for item in listings:
        score = calculate_deal_score(item, scoring)
        row = existing.get(item.external_id)
        if row is None:
            row = ListingRow(external_id=item.external_id)
            session.add(row)
            stats.new_listings += 1
        else:
            stats.updated_listings += 1

        row.title = item.title
        row.current_price = item.current_price
        row.original_price = item.original_price
        row.discount = compute_discount(item.current_price, item.original_price)
        row.category_id = item.category_id
        row.sales_rank = item.sales_rank
        row.rating = item.rating
        row.review_count = item.review_count
        row.image_url = item.image_url
        row.deal_score = score
        row.last_checked_at = now
        rows.append((row, score))

    await session.flush()
    return [ScoredListing(listing=row.to_domain(), score=score) for row, score in rows]


async def poll_listings(
    source: MarketplaceSource | None = None,
    query: DealQuery | None = None,
    scoring: ScoringConfig | None = None,
) -> IngestionResult:
    """Run one ingestion cycle.

    Args:
        source: Marketplace source (defaults to the Keepa client).
        query: Deal filters (defaults from settings).
        scoring: Scoring weights (defaults from settings).

    Returns:
        Upserted, scored listings plus stats.

    Raises:
        SourceUnavailableError: the source failed; nothing was written.
    """
    source = source or get_keepa_client()
    query = query or DealQuery.from_settings()
    scoring = scoring or ScoringConfig.from_settings()
    stats = IngestionStats()

    logger.info(
        f"Starting poll: categories={query.category_ids or 'all'} "
        f"discount={query.min_discount}-{query.max_discount}% max_pages={query.max_pages}"
    )
    try:
        records = await _fetch_all_pages(source, query, stats)
    except SourceUnavailableError:
        logger.error(f"Marketplace source unavailable after {stats.pages} page(s); cycle aborted")
        raise

    listings = _normalize_batch(records, query, stats)

    async with get_session() as session:
        scored = await _upsert_listings(session, listings, scoring, stats)

    logger.info(
        f"Poll complete: fetched={stats.fetched} new={stats.new_listings} updated={stats.updated_listings} "
        f"no_id={stats.skipped_no_id} bad_price={stats.rejected_price} malformed={stats.malformed} "
        f"duplicates={stats.duplicates}"
    )
    return IngestionResult(listings=scored, stats=stats)
