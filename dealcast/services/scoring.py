"""Deal score calculation service.

Deal Score (0-100) is a weighted blend of:
- Discount depth (linear up to a cap)
- Popularity (inverse-log of the sales rank)
- Quality (rating, trusted in proportion to the review count)

Missing signals contribute a neutral value instead of failing. When rank,
rating and review count are all missing the score is discount-only.
The function is pure: same inputs, same score.
"""

import math
from dataclasses import dataclass

from dealcast.domain import Listing
from dealcast.settings import Settings, get_settings

NEUTRAL_SUBSCORE = 50.0


@dataclass(frozen=True)
class ScoringConfig:
    """Tunable weights and caps."""

    weight_discount: float = 0.45
    weight_popularity: float = 0.20
    weight_quality: float = 0.35
    discount_cap: float = 70.0
    max_rank: int = 100_000
    review_floor: int = 10
    review_saturation: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ScoringConfig":
        settings = settings or get_settings()
        return cls(
            weight_discount=settings.score_weight_discount,
            weight_popularity=settings.score_weight_popularity,
            weight_quality=settings.score_weight_quality,
            discount_cap=settings.score_discount_cap,
            max_rank=settings.score_max_rank,
            review_floor=settings.score_review_floor,
            review_saturation=settings.score_review_saturation,
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    """Sub-scores (0-100) and the final rounded score."""

    discount: float
    popularity: float
    quality: float
    score: int
    discount_only: bool = False


def _finite(value: float | int | None) -> float | None:
    if value is None:
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return v


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def discount_subscore(discount: float | None, cap: float) -> float:
    d = _finite(discount)
    if d is None or d <= 0 or cap <= 0:
        return 0.0
    return _clamp(d / cap * 100.0)


def popularity_subscore(sales_rank: float | None, max_rank: int) -> float:
    """Rank 1 scores 100, `max_rank` and beyond score 0, log-scaled between."""
    rank = _finite(sales_rank)
    if rank is None or rank <= 0:
        return NEUTRAL_SUBSCORE
    if rank <= 1:
        return 100.0
    if max_rank <= 1:
        return NEUTRAL_SUBSCORE
    return _clamp(100.0 * (1.0 - math.log10(rank) / math.log10(max_rank)))


def review_confidence(review_count: float | None, floor: int, saturation: int) -> float:
    """How much to trust a rating given its review count (0..1).

    Below the floor confidence is cut hard (at most 0.25); from the floor it grows
    log-linearly from 0.5 to 1.0 at `saturation` reviews.
    """
    n = _finite(review_count)
    if n is None or n <= 0:
        return 0.0
    floor = max(1, floor)
    if n < floor:
        return 0.25 * n / floor
    if saturation <= floor:
        return 1.0
    return min(1.0, 0.5 + 0.5 * math.log10(n / floor) / math.log10(saturation / floor))


def quality_subscore(rating: float | None, review_count: float | None, floor: int, saturation: int) -> float:
    r = _finite(rating)
    if r is None or r < 0:
        return NEUTRAL_SUBSCORE
    rating_score = _clamp(r / 5.0 * 100.0)
    confidence = review_confidence(review_count, floor, saturation)
    return rating_score * confidence + NEUTRAL_SUBSCORE * (1.0 - confidence)


def score_breakdown(
    discount: float | None,
    sales_rank: float | None = None,
    rating: float | None = None,
    review_count: float | None = None,
    config: ScoringConfig | None = None,
) -> ScoreBreakdown:
    """Compute sub-scores and the final score. Never raises."""
    config = config or ScoringConfig()

    d = discount_subscore(discount, config.discount_cap)
    p = popularity_subscore(sales_rank, config.max_rank)
    q = quality_subscore(rating, review_count, config.review_floor, config.review_saturation)

    signals_missing = all(_finite(v) is None for v in (sales_rank, rating, review_count))
    weights = (
        max(0.0, config.weight_discount),
        max(0.0, config.weight_popularity),
        max(0.0, config.weight_quality),
    )
    if signals_missing or sum(weights) <= 0:
        return ScoreBreakdown(discount=d, popularity=p, quality=q, score=int(round(_clamp(d))), discount_only=True)

    total = sum(weights)
    blended = (d * weights[0] + p * weights[1] + q * weights[2]) / total
    return ScoreBreakdown(discount=d, popularity=p, quality=q, score=int(round(_clamp(blended))))


def calculate_deal_score(listing: Listing, config: ScoringConfig | None = None) -> int:
    """Score a listing 0-100.

    Args:
        listing: Normalized listing.
        config: Weights/caps; defaults when omitted.

    Returns:
        Integer score in [0, 100].
    """
    return score_breakdown(
        discount=listing.discount,
        sales_rank=listing.sales_rank,
        rating=listing.rating,
        review_count=listing.review_count,
        config=config,
    ).score


def score_label(score: int) -> str:
    """Human label for a score band."""
    if score >= 85:
        return "HOT"
    if score >= 70:
        return "GREAT"
    if score >= 50:
        return "GOOD"
    return "NORMAL"
