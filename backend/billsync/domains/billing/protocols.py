"""Billing domain protocols.

BillingServiceProtocol: the outer billing operations the endpoints need injected.
BillingWebhookProtocol: single method for webhook event processing.
PaymentVerificationProtocol: the synchronous post-checkout verification path.
"""

from typing import Optional, Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession

from billsync.domains.billing.types import ReconcileOutcome
from billsync.schemas.billing import (
    CheckoutSessionResponse,
    PaymentIntentResponse,
    ProviderSubscriptionStatus,
    VerifyPaymentResponse,
)


@runtime_checkable
class BillingServiceProtocol(Protocol):
    """Public billing service interface."""

    async def start_checkout(
        self, *, plan_id: str, organization_id: int, user_id: str
    ) -> CheckoutSessionResponse:
        """Start a hosted subscription checkout for a plan."""
        ...

    async def create_payment_intent(
        self, *, plan_id: str, organization_id: int, user_id: str, amount_cents: int
    ) -> PaymentIntentResponse:
        """Start a one-shot payment."""
        ...

    async def get_subscription_status(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        """Subscription status as the provider reports it."""
        ...

    async def cancel_subscription(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        """Cancel at the provider at the end of the current period."""
        ...


@runtime_checkable
class BillingWebhookProtocol(Protocol):
    """Webhook processing interface: verifies signature and processes event."""

    async def process_webhook(
        self, db: AsyncSession, payload: bytes, signature: Optional[str]
    ) -> ReconcileOutcome:
        """Verify webhook signature and process the resulting event.

        Raises InvalidWebhookSignatureError (a ValueError) before touching any
        state if the signature does not verify, and TransientBillingError when
        processing should be retried.
        """
        ...


@runtime_checkable
class PaymentVerificationProtocol(Protocol):
    """Client-triggered reconciliation of a checkout session."""

    async def verify_checkout_session(
        self, db: AsyncSession, session_id: str
    ) -> VerifyPaymentResponse:
        """Report ``pending`` or ``completed`` for a checkout session."""
        ...
