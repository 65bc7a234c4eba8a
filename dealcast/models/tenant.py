"""Tenant model.

The plan tier decides the daily generated-copy quota of each of the tenant's rules.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealcast.stores.postgres import Base

PLAN_TIERS = ("FREE", "PRO", "BUSINESS", "BETA_TESTER")


class Tenant(Base):
    """Account owning automation rules."""

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    plan: Mapped[str] = mapped_column(String(20), default="FREE")
    affiliate_tag: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    rules: Mapped[list["AutomationRule"]] = relationship(back_populates="tenant")  # noqa: F821

    def __repr__(self) -> str:
        return f"<Tenant {self.id} {self.plan}>"
