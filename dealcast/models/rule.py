"""AutomationRule model.

Predicate columns are nullable: NULL means "no constraint". Category ids and
channel targets are stored as JSON text, like other list-valued columns.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealcast.domain import AutomationRule as RuleRecord
from dealcast.domain import ChannelTarget, GeneratedMode, TemplateMode
from dealcast.stores.postgres import Base

COPY_MODE_TEMPLATE = "TEMPLATE"
COPY_MODE_GENERATED = "GENERATED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomationRule(Base):
    """Tenant-defined publishing rule."""

    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[int | None] = mapped_column(Integer)

    # Predicates
    category_ids_json: Mapped[str | None] = mapped_column(Text)
    min_price: Mapped[float | None] = mapped_column(Float)
    max_price: Mapped[float | None] = mapped_column(Float)
    min_score: Mapped[int | None] = mapped_column(Integer)
    min_rating: Mapped[float | None] = mapped_column(Float)
    min_reviews: Mapped[int | None] = mapped_column(Integer)

    # Copy
    copy_mode: Mapped[str] = mapped_column(String(20), default=COPY_MODE_TEMPLATE)
    message_template: Mapped[str | None] = mapped_column(Text)
    style_directive: Mapped[str | None] = mapped_column(Text)
    model_id: Mapped[str | None] = mapped_column(String(100))

    # Channels: [{"kind": "telegram", "channel_id": "@deals"}, ...]
    channels_json: Mapped[str] = mapped_column(Text, default="[]")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )

    tenant: Mapped["Tenant"] = relationship(back_populates="rules")  # noqa: F821

    @property
    def category_ids(self) -> list[int] | None:
        if not self.category_ids_json:
            return None
        return [int(c) for c in json.loads(self.category_ids_json)]

    @category_ids.setter
    def category_ids(self, value: list[int] | None) -> None:
        self.category_ids_json = json.dumps(list(value)) if value else None

    @property
    def channels(self) -> list[ChannelTarget]:
        items = json.loads(self.channels_json or "[]")
        return [ChannelTarget(kind=str(i["kind"]), channel_id=str(i["channel_id"])) for i in items]

    @channels.setter
    def channels(self, value: list[ChannelTarget]) -> None:
        self.channels_json = json.dumps([{"kind": c.kind, "channel_id": c.channel_id} for c in value])

    def to_domain(self) -> RuleRecord:
        """Convert to the pipeline's rule record.

        Requires `tenant` to be loaded (use selectinload when querying).
        """
        if (self.copy_mode or "").upper() == COPY_MODE_GENERATED:
            mode = GeneratedMode(
                style_directive=self.style_directive,
                model_id=self.model_id,
                template=self.message_template,
            )
        else:
            mode = TemplateMode(template=self.message_template)

        category_ids = self.category_ids
        return RuleRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            name=self.name,
            copy_mode=mode,
            channels=tuple(self.channels),
            category_ids=tuple(category_ids) if category_ids else None,
            min_price=self.min_price,
            max_price=self.max_price,
            min_score=self.min_score,
            min_rating=self.min_rating,
            min_reviews=self.min_reviews,
            priority=self.priority,
            created_at=self.created_at,
            active=self.active,
            plan=self.tenant.plan if self.tenant else "FREE",
            affiliate_tag=self.tenant.affiliate_tag if self.tenant else None,
        )

    def __repr__(self) -> str:
        return f"<AutomationRule {self.id} {self.copy_mode}>"
