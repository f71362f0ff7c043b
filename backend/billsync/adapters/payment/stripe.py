"""Stripe payment gateway.

Wraps the synchronous ``stripe`` SDK. Calls run in a worker thread so they
never block the event loop; connection errors and rate limits are retried with
backoff, everything else the SDK raises becomes ExternalServiceError.
"""

import asyncio
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from billsync.core.config import Settings
from billsync.core.exceptions import ExternalServiceError
from billsync.core.logging import logger
from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.exceptions import InvalidWebhookSignatureError

_SERVICE = "Stripe"


class StripePaymentGateway(PaymentGatewayProtocol):
    """PaymentGatewayProtocol backed by the Stripe API."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        price_ids: Mapping[str, Optional[str]],
        webhook_tolerance: int = 300,
    ) -> None:
        """Initialize with API credentials and the plan -> price mapping."""
        self._client = stripe.StripeClient(secret_key)
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        self._price_ids = dict(price_ids)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripePaymentGateway":
        """Build from application settings."""
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            price_ids=settings.stripe_price_ids,
            webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )

    # ---- Plumbing ----

    @retry(
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _call_with_retry(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._call_with_retry(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.with_context(operation=operation).warning(
                f"Stripe call failed: {type(e).__name__}: {e.user_message or e}"
            )
            raise ExternalServiceError(_SERVICE, f"{operation} failed: {e}") from e

    async def _retrieve(self, operation: str, fn: Callable[..., Any], object_id: str) -> Any:
        try:
            return await self._call_with_retry(fn, object_id)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                return None
            raise ExternalServiceError(_SERVICE, f"{operation} failed: {e}") from e
        except stripe.StripeError as e:
            raise ExternalServiceError(_SERVICE, f"{operation} failed: {e}") from e

    # ---- Price / plan mapping ----

    def get_price_for_plan(self, plan_id: str) -> Optional[str]:
        """Configured price id for a plan."""
        return self._price_ids.get(plan_id)

    # ---- Queries ----

    async def get_checkout_session(self, session_id: str) -> Optional[Mapping[str, Any]]:
        """Retrieve a checkout session."""
        return await self._retrieve(
            "get_checkout_session", self._client.v1.checkout.sessions.retrieve, session_id
        )

    async def get_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        """Retrieve a subscription."""
        return await self._retrieve(
            "get_subscription", self._client.v1.subscriptions.retrieve, subscription_id
        )

    # ---- Mutations ----

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Create a subscription-mode checkout; metadata goes on the session and subscription."""
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
            "subscription_data": {"metadata": metadata or {}},
        }
        return await self._call(
            "create_checkout_session", self._client.v1.checkout.sessions.create, params=params
        )

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        """Create a one-shot payment intent."""
        params = {
            "amount": amount_cents,
            "currency": currency,
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        return await self._call(
            "create_payment_intent", self._client.v1.payment_intents.create, params=params
        )

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> Mapping[str, Any]:
        """Cancel at period end, or immediately."""
        if at_period_end:
            return await self._call(
                "cancel_subscription",
                self._client.v1.subscriptions.update,
                subscription_id,
                params={"cancel_at_period_end": True},
            )
        return await self._call(
            "cancel_subscription", self._client.v1.subscriptions.cancel, subscription_id
        )

    # ---- Webhooks ----

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """Check the ``Stripe-Signature`` header against the exact raw body."""
        if not signature:
            raise InvalidWebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except UnicodeDecodeError as e:
            raise InvalidWebhookSignatureError("Payload is not valid UTF-8") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignatureError(f"Invalid signature: {e.user_message or e}") from e
