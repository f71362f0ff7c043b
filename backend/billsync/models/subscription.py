"""Subscription model."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from billsync.models._base import Base


class Subscription(Base):
    """One organization's subscription, keyed by the provider's reference."""

    __tablename__ = "subscription"

    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    monthly_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status_event_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("uq_subscription_external_ref", "external_ref", unique=True),
        # At most one non-terminal subscription per organization
        Index(
            "uq_subscription_org_open",
            "organization_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("idx_subscription_organization_id", "organization_id"),
    )
