"""Null payment gateway for when Stripe is disabled.

Satisfies PaymentGatewayProtocol so the container can always be fully
constructed.

Lookups return empty results. User-facing billing operations (checkout
sessions, payment intents, cancellation) raise BillingNotAvailableError: they
require a real payment provider and should fail clearly.

verify_webhook_signature raises InvalidWebhookSignatureError, matching the
Stripe adapter's contract for invalid signatures: with no secret configured,
nothing can be authenticated.
"""

from typing import Any, Dict, Mapping, Optional

from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.exceptions import (
    BillingNotAvailableError,
    InvalidWebhookSignatureError,
)


class NullPaymentGateway(PaymentGatewayProtocol):
    """No-op payment gateway used when Stripe is disabled."""

    # ------------------------------------------------------------------
    # Lookups / queries: return empty defaults
    # ------------------------------------------------------------------

    def get_price_for_plan(self, plan_id: str) -> Optional[str]:
        """Return None: no prices configured."""
        return None

    async def get_checkout_session(self, session_id: str) -> Optional[Mapping[str, Any]]:
        """Return None: the provider knows no sessions."""
        return None

    async def get_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        """Return None: the provider knows no subscriptions."""
        return None

    # ------------------------------------------------------------------
    # User-facing operations: raise
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Raise: billing is disabled."""
        raise BillingNotAvailableError()

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Raise: billing is disabled."""
        raise BillingNotAvailableError()

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> Mapping[str, Any]:
        """Raise: billing is disabled."""
        raise BillingNotAvailableError()

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """Always reject."""
        raise InvalidWebhookSignatureError("Billing is not enabled; webhooks are rejected")
