"""Models for the application."""

from ._base import Base
from .onboarding_progress import OnboardingProgress
from .payment import Payment
from .subscription import Subscription

__all__ = ["Base", "OnboardingProgress", "Payment", "Subscription"]
