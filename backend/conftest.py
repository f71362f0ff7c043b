"""Root conftest for pytest configuration and shared fixtures.

This conftest is loaded before the colocated test packages under billsync/,
making its fixtures available to domain tests AND adapter tests.
"""

import os
from unittest.mock import AsyncMock

import pytest

# ---------------------------------------------------------------------------
# Environment variables: must be set before any billsync module import
# Uses setdefault so real env vars (CI) are never overridden.
# ---------------------------------------------------------------------------
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STRIPE_ENABLED", "false")
os.environ.setdefault("SQLALCHEMY_ASYNC_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FRONTEND_URL", "http://localhost:5173")


# ---------------------------------------------------------------------------
# Shared fake fixtures: individual protocol fakes
# ---------------------------------------------------------------------------


@pytest.fixture
def db():
    """Stand-in session for code paths whose repositories are all faked."""
    return AsyncMock()


@pytest.fixture
def fake_payment_gateway():
    """Fake PaymentGateway that records calls and serves seeded sessions."""
    from billsync.adapters.payment.fake import FakePaymentGateway

    return FakePaymentGateway()


@pytest.fixture
def fake_subscription_repo():
    """Fake SubscriptionRepository with the SQL repository's write semantics."""
    from billsync.domains.billing.fakes.repository import FakeSubscriptionRepository

    return FakeSubscriptionRepository()


@pytest.fixture
def fake_payment_repo():
    """Fake PaymentRepository with insert-if-absent semantics."""
    from billsync.domains.billing.fakes.repository import FakePaymentRepository

    return FakePaymentRepository()


@pytest.fixture
def fake_onboarding_repo():
    """Fake OnboardingRepository that stores subscription context per user."""
    from billsync.domains.billing.fakes.repository import FakeOnboardingRepository

    return FakeOnboardingRepository()


# ---------------------------------------------------------------------------
# Test container: fully faked Container for injection
# ---------------------------------------------------------------------------


@pytest.fixture
def test_container(
    fake_payment_gateway,
    fake_subscription_repo,
    fake_payment_repo,
    fake_onboarding_repo,
):
    """A Container whose services run on fakes only.

    For partial overrides, use container.replace():
        null_container = test_container.replace(payment_gateway=NullPaymentGateway())
    """
    from billsync.core.container import Container
    from billsync.domains.billing.reconciler import BillingReconciler
    from billsync.domains.billing.service import BillingService
    from billsync.domains.billing.verification import PaymentVerificationService
    from billsync.domains.billing.webhook_processor import BillingWebhookProcessor

    reconciler = BillingReconciler(
        fake_subscription_repo,
        fake_payment_repo,
        fake_onboarding_repo,
        db_timeout=1.0,
    )
    return Container(
        payment_gateway=fake_payment_gateway,
        billing_service=BillingService(
            fake_payment_gateway, frontend_url="http://localhost:5173"
        ),
        billing_webhook=BillingWebhookProcessor(fake_payment_gateway, reconciler),
        payment_verification=PaymentVerificationService(
            fake_payment_gateway,
            reconciler,
            fake_payment_repo,
            fake_subscription_repo,
            gateway_timeout=1.0,
            db_timeout=1.0,
        ),
    )
