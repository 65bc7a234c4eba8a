"""Listing model.

One row per marketplace product (keyed by ASIN). Rows are upserted on every
poll and never deleted; `deal_score` caches the latest score for dashboards.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from dealcast.domain import Listing as ListingRecord
from dealcast.stores.postgres import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Listing(Base):
    """Normalized marketplace listing."""

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)

    title: Mapped[str] = mapped_column(Text)
    category_id: Mapped[int | None] = mapped_column(Integer, index=True)
    image_url: Mapped[str | None] = mapped_column(Text)

    # Pricing (major currency units)
    current_price: Mapped[float] = mapped_column(Float)
    original_price: Mapped[float | None] = mapped_column(Float)
    discount: Mapped[int] = mapped_column(Integer, default=0)

    # Popularity / quality signals
    sales_rank: Mapped[int | None] = mapped_column(Integer)
    rating: Mapped[float | None] = mapped_column(Float)
    review_count: Mapped[int | None] = mapped_column(Integer)

    # Derived, recomputed each cycle
    deal_score: Mapped[int | None] = mapped_column(Integer, index=True)

    last_checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )

    def to_domain(self) -> ListingRecord:
        return ListingRecord(
            id=self.id,
            external_id=self.external_id,
            title=self.title,
            current_price=self.current_price,
            original_price=self.original_price,
            category_id=self.category_id,
            sales_rank=self.sales_rank,
            rating=self.rating,
            review_count=self.review_count,
            image_url=self.image_url,
            last_checked_at=self.last_checked_at,
        )

    def __repr__(self) -> str:
        return f"<Listing {self.external_id} €{self.current_price:.2f}>"
