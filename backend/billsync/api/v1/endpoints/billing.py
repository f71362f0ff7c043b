"""API endpoints for billing operations.

This module provides the HTTP interface for billing operations,
delegating all business logic to the billing domain.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from billsync import schemas
from billsync.api import deps
from billsync.api.deps import Inject
from billsync.core.logging import logger
from billsync.domains.billing.exceptions import InvalidWebhookSignatureError
from billsync.domains.billing.protocols import (
    BillingServiceProtocol,
    BillingWebhookProtocol,
    PaymentVerificationProtocol,
)

router = APIRouter()


@router.post("/checkout-session", response_model=schemas.CheckoutSessionResponse)
async def create_checkout_session(
    request: schemas.CheckoutSessionRequest,
    billing: BillingServiceProtocol = Inject(BillingServiceProtocol),
) -> schemas.CheckoutSessionResponse:
    """Create a Stripe checkout session for a subscription plan.

    Args:
        request: Plan, organization and user the checkout is for
        billing: Billing service

    Returns:
        Checkout session id and the URL to redirect the user to
    """
    return await billing.start_checkout(
        plan_id=request.plan_id,
        organization_id=request.organization_id,
        user_id=request.user_id,
    )


@router.post("/payment-intent", response_model=schemas.PaymentIntentResponse)
async def create_payment_intent(
    request: schemas.PaymentIntentRequest,
    billing: BillingServiceProtocol = Inject(BillingServiceProtocol),
) -> schemas.PaymentIntentResponse:
    """Create a one-shot payment intent; the client confirms it with the returned secret."""
    return await billing.create_payment_intent(
        plan_id=request.plan_id,
        organization_id=request.organization_id,
        user_id=request.user_id,
        amount_cents=request.amount_cents,
    )


@router.get(
    "/subscription-status/{subscription_ref}",
    response_model=schemas.ProviderSubscriptionStatus,
)
async def get_subscription_status(
    subscription_ref: str,
    billing: BillingServiceProtocol = Inject(BillingServiceProtocol),
) -> schemas.ProviderSubscriptionStatus:
    """Get a subscription's status as Stripe reports it."""
    return await billing.get_subscription_status(subscription_ref)


@router.post("/cancel-subscription", response_model=schemas.ProviderSubscriptionStatus)
async def cancel_subscription(
    request: schemas.CancelSubscriptionRequest,
    billing: BillingServiceProtocol = Inject(BillingServiceProtocol),
) -> schemas.ProviderSubscriptionStatus:
    """Cancel a subscription at the end of the current billing period.

    The local subscription is cancelled when Stripe confirms the deletion by webhook.
    """
    return await billing.cancel_subscription(request.subscription_ref)


@router.post("/verify-payment", response_model=schemas.VerifyPaymentResponse)
async def verify_payment(
    request: schemas.VerifyPaymentRequest,
    db: AsyncSession = Depends(deps.get_db),
    verification: PaymentVerificationProtocol = Inject(PaymentVerificationProtocol),
) -> schemas.VerifyPaymentResponse:
    """Verify a checkout session after the user returns from Stripe.

    Reconciles the payment immediately when Stripe reports the session paid,
    so the client does not have to wait for the webhook.

    Returns:
        ``pending`` or ``completed`` with the recorded payment and subscription
    """
    return await verification.verify_checkout_session(db, request.session_id)


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(deps.get_db),
    webhook: BillingWebhookProtocol = Inject(BillingWebhookProtocol),
) -> Response:
    """Handle Stripe webhook events.

    Security:
    - Verifies webhook signature over the raw body (inside processor)
    - Idempotent processing

    Args:
        request: Raw HTTP request; the body is read as bytes, never parsed here
        stripe_signature: Stripe signature header
        db: Database session
        webhook: Webhook processor (handles signature verification + processing)

    Returns:
        200 when the event needs no redelivery, 400 on signature error,
        500 when processing should be retried
    """
    try:
        payload = await request.body()
    except Exception:
        return Response(status_code=400)

    if not stripe_signature:
        return Response(status_code=400)

    try:
        await webhook.process_webhook(db, payload, stripe_signature)
        return Response(status_code=200)
    except InvalidWebhookSignatureError:
        return Response(status_code=400)
    except Exception as e:
        logger.error(f"Webhook processing failed, requesting redelivery: {e}")
        return Response(status_code=500)
