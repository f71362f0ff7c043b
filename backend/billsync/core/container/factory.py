"""Container Factory.

All construction logic lives here. The factory reads settings and builds
the container with environment-appropriate implementations.

Design principles:
- Single place for all wiring decisions
- Fail fast: broken wiring crashes at startup, not at 3am
- Testable: can unit test factory logic with mock settings
"""

from billsync.core.config import Settings
from billsync.core.container.container import Container
from billsync.core.logging import logger
from billsync.core.protocols.payment import PaymentGatewayProtocol


def create_container(settings: Settings) -> Container:
    """Build container with environment-appropriate implementations.

    Args:
        settings: Application settings (from core/config)

    Returns:
        Fully constructed Container ready for use
    """
    billing_services = _create_billing_services(settings)

    return Container(
        payment_gateway=billing_services["payment_gateway"],
        billing_service=billing_services["billing_service"],
        billing_webhook=billing_services["billing_webhook"],
        payment_verification=billing_services["payment_verification"],
    )


def _create_payment_gateway(settings: Settings) -> PaymentGatewayProtocol:
    """Create payment gateway: Stripe if enabled, otherwise a null implementation."""
    if settings.STRIPE_ENABLED:
        from billsync.adapters.payment.stripe import StripePaymentGateway

        return StripePaymentGateway.from_settings(settings)

    from billsync.adapters.payment.null import NullPaymentGateway

    logger.info("Stripe disabled; billing endpoints and webhooks are unavailable")
    return NullPaymentGateway()


def _create_billing_services(settings: Settings) -> dict:
    """Create the billing service, webhook processor and verifier with shared dependencies."""
    from billsync.domains.billing.reconciler import BillingReconciler
    from billsync.domains.billing.repository import (
        OnboardingRepository,
        PaymentRepository,
        SubscriptionRepository,
    )
    from billsync.domains.billing.service import BillingService
    from billsync.domains.billing.verification import PaymentVerificationService
    from billsync.domains.billing.webhook_processor import BillingWebhookProcessor

    payment_gateway = _create_payment_gateway(settings)
    subscription_repo = SubscriptionRepository()
    payment_repo = PaymentRepository()
    reconciler = BillingReconciler(
        subscription_repo=subscription_repo,
        payment_repo=payment_repo,
        onboarding_repo=OnboardingRepository(),
        db_timeout=settings.BILLING_DB_TIMEOUT_SECONDS,
        default_plan_id=settings.BILLING_DEFAULT_PLAN_ID,
        period_days=settings.BILLING_PERIOD_DAYS,
    )

    billing_service = BillingService(
        payment_gateway=payment_gateway,
        frontend_url=settings.FRONTEND_URL,
        currency=settings.BILLING_CURRENCY,
        gateway_timeout=settings.BILLING_GATEWAY_TIMEOUT_SECONDS,
    )
    billing_webhook = BillingWebhookProcessor(
        payment_gateway=payment_gateway,
        reconciler=reconciler,
    )
    payment_verification = PaymentVerificationService(
        payment_gateway=payment_gateway,
        reconciler=reconciler,
        payment_repo=payment_repo,
        subscription_repo=subscription_repo,
        gateway_timeout=settings.BILLING_GATEWAY_TIMEOUT_SECONDS,
        db_timeout=settings.BILLING_DB_TIMEOUT_SECONDS,
    )

    return {
        "billing_service": billing_service,
        "billing_webhook": billing_webhook,
        "payment_gateway": payment_gateway,
        "payment_verification": payment_verification,
    }
