"""Billing domain test fixtures and helpers.

Provides pre-built helpers for Stripe event shapes, typed events and service
wiring on top of the in-memory fakes.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest

from billsync.adapters.payment.fake import VALID_SIGNATURE, FakePaymentGateway
from billsync.core.logging import logger
from billsync.domains.billing.fakes.repository import (
    FakeOnboardingRepository,
    FakePaymentRepository,
    FakeSubscriptionRepository,
)
from billsync.domains.billing.reconciler import BillingReconciler
from billsync.domains.billing.types import (
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
)
from billsync.domains.billing.verification import PaymentVerificationService
from billsync.domains.billing.webhook_processor import BillingWebhookProcessor
from billsync.schemas.billing import PaymentRefKind

DEFAULT_ORG_ID = 42
DEFAULT_USER_ID = "user_1"
DEFAULT_SESSION_ID = "cs_1"
DEFAULT_SUBSCRIPTION_REF = "sub_1"

# 2023-11-14T22:13:20Z
BASE_TS = 1_700_000_000
BASE_TIME = datetime(2023, 11, 14, 22, 13, 20)

TEST_LOG = logger.with_context(test="billing")


def _at(offset_seconds: int = 0) -> datetime:
    return BASE_TIME + timedelta(seconds=offset_seconds)


def _metadata(
    org_id: Optional[int] = DEFAULT_ORG_ID,
    user_id: Optional[str] = DEFAULT_USER_ID,
    plan_id: Optional[str] = "small_commune",
) -> dict[str, str]:
    data = {}
    if org_id is not None:
        data["orgId"] = str(org_id)
    if user_id is not None:
        data["userId"] = user_id
    if plan_id is not None:
        data["planId"] = plan_id
    return data


# ---------------------------------------------------------------------------
# Stripe payload shapes
# ---------------------------------------------------------------------------


def _make_stripe_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int = BASE_TS,
) -> dict[str, Any]:
    """A Stripe event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def _payload(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


def _make_checkout_session_obj(
    session_id: str = DEFAULT_SESSION_ID,
    *,
    payment_status: str = "paid",
    metadata: Optional[dict[str, str]] = None,
    subscription: Optional[str] = DEFAULT_SUBSCRIPTION_REF,
    amount_total: int = 9900,
    created: int = BASE_TS,
) -> dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "metadata": _metadata() if metadata is None else metadata,
        "subscription": subscription,
        "payment_intent": None,
        "amount_total": amount_total,
        "currency": "EUR",
        "created": created,
    }


def _make_invoice_obj(
    invoice_id: str = "in_1",
    *,
    subscription: Optional[str] = DEFAULT_SUBSCRIPTION_REF,
    payment_intent: Optional[str] = "pi_inv_1",
    billing_reason: str = "subscription_cycle",
    amount_paid: int = 9900,
    period: Optional[tuple[int, int]] = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription,
        "payment_intent": payment_intent,
        "billing_reason": billing_reason,
        "amount_paid": amount_paid,
        "currency": "eur",
        "metadata": {},
    }
    if period is not None:
        obj["lines"] = {"data": [{"period": {"start": period[0], "end": period[1]}}]}
    return obj


# ---------------------------------------------------------------------------
# Typed events
# ---------------------------------------------------------------------------


def _make_payment_succeeded(
    payment_ref: str = DEFAULT_SESSION_ID,
    *,
    subscription_ref: Optional[str] = DEFAULT_SUBSCRIPTION_REF,
    metadata: Optional[dict[str, str]] = None,
    occurred_at: Optional[datetime] = None,
    ref_kind: PaymentRefKind = PaymentRefKind.CHECKOUT_SESSION,
    amount_cents: int = 9900,
) -> PaymentSucceeded:
    return PaymentSucceeded(
        event_id="evt_ps",
        provider_type="checkout.session.completed",
        occurred_at=occurred_at or _at(),
        metadata=_metadata() if metadata is None else metadata,
        payment_ref=payment_ref,
        ref_kind=ref_kind,
        subscription_ref=subscription_ref,
        amount_cents=amount_cents,
        currency="eur",
    )


def _make_payment_failed(
    payment_ref: str = "pi_1",
    *,
    metadata: Optional[dict[str, str]] = None,
    error_message: Optional[str] = "Your card was declined.",
) -> PaymentFailed:
    return PaymentFailed(
        event_id="evt_pf",
        provider_type="payment_intent.payment_failed",
        occurred_at=_at(),
        metadata=_metadata() if metadata is None else metadata,
        payment_ref=payment_ref,
        ref_kind=PaymentRefKind.PAYMENT_INTENT,
        amount_cents=9900,
        currency="eur",
        provider_status="requires_payment_method",
        error_message=error_message,
    )


def _make_invoice_paid(
    *,
    subscription_ref: Optional[str] = DEFAULT_SUBSCRIPTION_REF,
    payment_intent_ref: Optional[str] = "pi_inv_1",
    occurred_at: Optional[datetime] = None,
    billing_reason: str = "subscription_cycle",
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> InvoicePaymentSucceeded:
    return InvoicePaymentSucceeded(
        event_id="evt_ip",
        provider_type="invoice.paid",
        occurred_at=occurred_at or _at(),
        invoice_id="in_1",
        subscription_ref=subscription_ref,
        payment_intent_ref=payment_intent_ref,
        amount_cents=9900,
        currency="eur",
        billing_reason=billing_reason,
        period_start=period_start,
        period_end=period_end,
    )


def _make_invoice_failed(
    *,
    subscription_ref: Optional[str] = DEFAULT_SUBSCRIPTION_REF,
    payment_intent_ref: Optional[str] = "pi_inv_1",
    occurred_at: Optional[datetime] = None,
) -> InvoicePaymentFailed:
    return InvoicePaymentFailed(
        event_id="evt_if",
        provider_type="invoice.payment_failed",
        occurred_at=occurred_at or _at(),
        invoice_id="in_1",
        subscription_ref=subscription_ref,
        payment_intent_ref=payment_intent_ref,
    )


def _make_subscription_deleted(
    subscription_ref: str = DEFAULT_SUBSCRIPTION_REF,
    *,
    occurred_at: Optional[datetime] = None,
) -> SubscriptionDeleted:
    return SubscriptionDeleted(
        event_id="evt_sd",
        provider_type="customer.subscription.deleted",
        occurred_at=occurred_at or _at(),
        subscription_ref=subscription_ref,
    )


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _make_reconciler(
    subscription_repo: Optional[FakeSubscriptionRepository] = None,
    payment_repo: Optional[FakePaymentRepository] = None,
    onboarding_repo: Optional[FakeOnboardingRepository] = None,
    db_timeout: float = 1.0,
):
    """Build a BillingReconciler on fakes; returns (reconciler, subs, payments, onboarding)."""
    subscription_repo = subscription_repo or FakeSubscriptionRepository()
    payment_repo = payment_repo or FakePaymentRepository()
    onboarding_repo = onboarding_repo or FakeOnboardingRepository()
    reconciler = BillingReconciler(
        subscription_repo,
        payment_repo,
        onboarding_repo,
        db_timeout=db_timeout,
    )
    return reconciler, subscription_repo, payment_repo, onboarding_repo


def _make_webhook_processor(
    gateway: Optional[FakePaymentGateway] = None,
    **reconciler_kwargs: Any,
):
    """Build a BillingWebhookProcessor; returns (processor, gateway, subs, payments, onboarding)."""
    gateway = gateway or FakePaymentGateway()
    reconciler, subs, payments, onboarding = _make_reconciler(**reconciler_kwargs)
    return BillingWebhookProcessor(gateway, reconciler), gateway, subs, payments, onboarding


def _make_verifier(
    gateway: Optional[FakePaymentGateway] = None,
    *,
    gateway_timeout: float = 1.0,
    **reconciler_kwargs: Any,
):
    """Build a PaymentVerificationService sharing its repos with a reconciler."""
    gateway = gateway or FakePaymentGateway()
    reconciler, subs, payments, onboarding = _make_reconciler(**reconciler_kwargs)
    verifier = PaymentVerificationService(
        gateway,
        reconciler,
        payments,
        subs,
        gateway_timeout=gateway_timeout,
        db_timeout=1.0,
    )
    return verifier, reconciler, gateway, subs, payments, onboarding


@pytest.fixture
def signature():
    """A signature the fake gateway accepts."""
    return VALID_SIGNATURE
