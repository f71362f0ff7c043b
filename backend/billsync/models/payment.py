"""Payment model."""

from typing import Optional
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billsync.models._base import Base


class Payment(Base):
    """A settled payment; ``external_ref`` is the deduplication key."""

    __tablename__ = "payment"

    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    ref_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("subscription.id", name="fk_payment_subscription_id"), nullable=True
    )
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False, default="stripe")

    __table_args__ = (
        Index("uq_payment_external_ref", "external_ref", unique=True),
        Index("idx_payment_subscription_id", "subscription_id"),
    )
