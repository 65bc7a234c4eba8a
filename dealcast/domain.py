"""Domain types shared by the deal pipeline.

These are plain dataclasses, decoupled from the ORM rows in `dealcast.models`
(rows convert via `to_domain()`), so scoring, matching and copy generation can be
exercised without a database.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


def round_half_up(value: float) -> int:
    """Round halves up; built-in round() rounds halves to even."""
    return int(math.floor(value + 0.5))


def compute_discount(current_price: float, original_price: float | None) -> int:
    """Discount percentage derived from prices.

    Returns 0 when the original price is missing or not positive.
    """
    if not original_price or original_price <= 0:
        return 0
    ratio = (original_price - current_price) / original_price * 100
    if not math.isfinite(ratio):
        return 0
    return max(0, min(100, round_half_up(ratio)))


@dataclass(frozen=True)
class Listing:
    """Normalized marketplace product record."""

    external_id: str
    title: str
    current_price: float
    original_price: float | None = None
    category_id: int | None = None
    sales_rank: int | None = None
    rating: float | None = None
    review_count: int | None = None
    image_url: str | None = None
    last_checked_at: datetime | None = None
    id: int | None = None

    @property
    def discount(self) -> int:
        return compute_discount(self.current_price, self.original_price)


class CopySource(str, Enum):
    """Where a piece of outbound copy came from."""

    TEMPLATE = "template"
    GENERATED = "generated"
    CACHED = "cached"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class TemplateMode:
    """Render the rule's literal message template."""

    template: str | None = None


@dataclass(frozen=True)
class GeneratedMode:
    """Ask the generative model, guided by an optional style directive."""

    style_directive: str | None = None
    model_id: str | None = None
    template: str | None = None  # fallback when generation is unavailable


CopyMode = TemplateMode | GeneratedMode


@dataclass(frozen=True)
class ChannelTarget:
    """One outbound destination for a rule (e.g. a Telegram chat)."""

    kind: str
    channel_id: str


@dataclass(frozen=True)
class AutomationRule:
    """Tenant-defined rule: predicates, copy mode and channels."""

    id: int
    tenant_id: int
    name: str
    copy_mode: CopyMode
    channels: tuple[ChannelTarget, ...] = ()
    category_ids: tuple[int, ...] | None = None
    min_price: float | None = None
    max_price: float | None = None
    min_score: int | None = None
    min_rating: float | None = None
    min_reviews: int | None = None
    priority: int | None = None
    created_at: datetime | None = None
    active: bool = True
    # Tenant attributes the pipeline needs (denormalized at load time)
    plan: str = "FREE"
    affiliate_tag: str | None = None


@dataclass(frozen=True)
class CopyResult:
    """Outcome of copy generation; degraded paths are values, not errors."""

    text: str
    source: CopySource
    fingerprint: str | None = None
    fallback_reason: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.source == CopySource.FALLBACK


@dataclass(frozen=True)
class PublishReceipt:
    success: bool
    external_message_id: str | None = None
    error: str | None = None


@dataclass
class PublishAttempt:
    """One dispatch of copy to one channel."""

    rule_id: int
    listing_id: str
    channel: ChannelTarget
    success: bool
    external_message_id: str | None = None
    error: str | None = None
    attempted_at: datetime | None = None


@dataclass
class ListingOutcome:
    """Everything that happened downstream of one scored listing."""

    listing: Listing
    score: int
    matched_rule_ids: list[int] = field(default_factory=list)
    copies: dict[int, CopyResult] = field(default_factory=dict)
    attempts: list[PublishAttempt] = field(default_factory=list)
    errors: int = 0
    # (rule, channel) pairs skipped because the listing was already posted there
    already_posted: int = 0
