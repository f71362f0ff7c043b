"""Payment gateway protocol.

Cross-cutting infrastructure protocol for the payment provider (Stripe).
All methods must be implemented by the same provider: the protocol is not split.

Direct consumers: BillingWebhookProcessor, PaymentVerificationService, BillingService.
"""

from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable


@runtime_checkable
class PaymentGatewayProtocol(Protocol):
    """Protocol for payment gateway operations.

    Provider objects are returned as mappings (Stripe objects are dict
    subclasses), so domain code reads them with the same helpers whether they
    came from a webhook or from a query.
    """

    # -------------------------------------------------------------------------
    # Price / plan mapping
    # -------------------------------------------------------------------------

    def get_price_for_plan(self, plan_id: str) -> Optional[str]:
        """Get payment provider price ID for a plan."""
        ...

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_checkout_session(self, session_id: str) -> Optional[Mapping[str, Any]]:
        """Retrieve a checkout session. None if the provider does not know it."""
        ...

    async def get_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        """Retrieve a subscription. None if the provider does not know it."""
        ...

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Create a hosted checkout session in subscription mode."""
        ...

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Create a one-shot payment intent."""
        ...

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> Mapping[str, Any]:
        """Cancel a subscription, by default at the end of the current period."""
        ...

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """Authenticate a raw webhook payload.

        Raises InvalidWebhookSignatureError (a ValueError) when the signature
        is missing, malformed, expired or does not match.
        """
        ...
