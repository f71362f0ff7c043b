"""Billing service.

Outer billing operations the onboarding flow calls directly: starting a hosted
checkout or a one-shot payment, and reading or cancelling a subscription at
Stripe. None of these write local state; subscriptions and payments are only
materialized by reconciliation (webhook or fallback verification).
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from billsync.core.logging import logger
from billsync.core.protocols.payment import PaymentGatewayProtocol
from billsync.domains.billing.exceptions import (
    BillingNotFoundError,
    InvalidPlanError,
    bounded,
    wrap_gateway_errors,
)
from billsync.domains.billing.protocols import BillingServiceProtocol
from billsync.domains.billing.types import PLAN_CATALOG
from billsync.schemas.billing import (
    CheckoutSessionResponse,
    PaymentIntentResponse,
    ProviderSubscriptionStatus,
)


class BillingService(BillingServiceProtocol):
    """Service for starting payments and managing provider subscriptions."""

    def __init__(
        self,
        payment_gateway: PaymentGatewayProtocol,
        *,
        frontend_url: str,
        currency: str = "eur",
        gateway_timeout: float = 10.0,
    ) -> None:
        """Initialize with all required dependencies."""
        self._payment_gateway = payment_gateway
        self._frontend_url = frontend_url.rstrip("/")
        self._currency = currency
        self._gateway_timeout = gateway_timeout

    def _metadata(self, plan_id: str, organization_id: int, user_id: str) -> dict[str, str]:
        # Keys match what the reconciler's metadata model reads back
        return {
            "organization_id": str(organization_id),
            "user_id": user_id,
            "plan_id": plan_id,
            "amount_monthly": str(PLAN_CATALOG[plan_id].monthly_price),
        }

    @wrap_gateway_errors
    async def start_checkout(
        self, *, plan_id: str, organization_id: int, user_id: str
    ) -> CheckoutSessionResponse:
        """Start a hosted subscription checkout for a plan."""
        if plan_id not in PLAN_CATALOG:
            raise InvalidPlanError(plan_id)
        price_id = self._payment_gateway.get_price_for_plan(plan_id)
        if not price_id:
            raise InvalidPlanError(plan_id)

        session = await bounded(
            self._payment_gateway.create_checkout_session(
                price_id=price_id,
                success_url=(
                    f"{self._frontend_url}/onboarding/success?session_id={{CHECKOUT_SESSION_ID}}"
                ),
                cancel_url=f"{self._frontend_url}/onboarding/subscription",
                metadata=self._metadata(plan_id, organization_id, user_id),
            ),
            self._gateway_timeout,
            "create_checkout_session",
        )
        logger.with_context(organization_id=organization_id).info(
            f"Checkout session {session['id']} created for plan {plan_id}"
        )
        return CheckoutSessionResponse(
            id=session["id"], url=session.get("url"), status=session.get("status")
        )

    @wrap_gateway_errors
    async def create_payment_intent(
        self, *, plan_id: str, organization_id: int, user_id: str, amount_cents: int
    ) -> PaymentIntentResponse:
        """Start a one-shot payment."""
        if plan_id not in PLAN_CATALOG:
            raise InvalidPlanError(plan_id)

        intent = await bounded(
            self._payment_gateway.create_payment_intent(
                amount_cents=amount_cents,
                currency=self._currency,
                metadata=self._metadata(plan_id, organization_id, user_id),
            ),
            self._gateway_timeout,
            "create_payment_intent",
        )
        logger.with_context(organization_id=organization_id).info(
            f"Payment intent {intent['id']} created for plan {plan_id}"
        )
        return PaymentIntentResponse(id=intent["id"], client_secret=intent.get("client_secret"))

    @wrap_gateway_errors
    async def get_subscription_status(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        """Subscription status as Stripe reports it."""
        subscription = await bounded(
            self._payment_gateway.get_subscription(subscription_ref),
            self._gateway_timeout,
            "get_subscription",
        )
        if subscription is None:
            raise BillingNotFoundError(f"Subscription {subscription_ref} not found")
        return _status(subscription)

    @wrap_gateway_errors
    async def cancel_subscription(self, subscription_ref: str) -> ProviderSubscriptionStatus:
        """Cancel at period end.

        The local subscription stays as is until Stripe sends
        ``customer.subscription.deleted``.
        """
        subscription = await bounded(
            self._payment_gateway.cancel_subscription(subscription_ref, at_period_end=True),
            self._gateway_timeout,
            "cancel_subscription",
        )
        logger.with_context(subscription_ref=subscription_ref).info(
            "Subscription set to cancel at period end"
        )
        return _status(subscription)


def _status(subscription: Mapping[str, Any]) -> ProviderSubscriptionStatus:
    period_end: Optional[datetime] = None
    raw_end = subscription.get("current_period_end")
    if raw_end is None:
        # Newer API versions carry the period on the subscription items
        items = (subscription.get("items") or {}).get("data") or []
        raw_end = items[0].get("current_period_end") if items else None
    if isinstance(raw_end, (int, float)):
        period_end = datetime.fromtimestamp(raw_end, tz=timezone.utc)
    return ProviderSubscriptionStatus(
        id=subscription["id"],
        status=subscription.get("status", "unknown"),
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )
