"""Onboarding progress model.

The onboarding wizard owns this table. Billing only writes ``subscription_data``.
"""

from typing import Optional

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from billsync.models._base import Base


class OnboardingProgress(Base):
    """Per-user onboarding state."""

    __tablename__ = "onboarding_progress"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    current_step: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subscription_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
