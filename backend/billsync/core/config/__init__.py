"""Configuration module for Billsync backend.

Provides centralized configuration management with type-safe enums.

Usage:
    from billsync.core.config import settings, Environment

    # Access settings
    if settings.STRIPE_ENABLED:
        ...

    # Use enums for type safety
    if settings.ENVIRONMENT == Environment.PRD:
        ...
"""

from billsync.core.config.enums import Environment
from billsync.core.config.settings import Settings

__all__ = [
    "Settings",
    "Environment",
    "settings",
]

# Singleton settings instance
settings = Settings()
